#!/usr/bin/env python3
"""
runs.py — 连续季度 run 切分
============================
每个公司按 datadate 升序单次前向扫描：
  - 第一条记录开启 run 1
  - 之后每条记录：gap = 本条 datadate − 上一条 datadate，
    expected = 本条季末对应的固定季度长度；
    |gap − expected| <= tolerance 则延续当前 run，否则 run_id + 1

run_id 只作为标签留在已输出的记录上，之后不再拆分或合并。
"""
from __future__ import annotations

import pandas as pd

from fqpanel.checks import DataIntegrityError
from fqpanel.fiscal_calendar import expected_quarter_length


def segment_runs(df: pd.DataFrame, tolerance: int = 7,
                 firm_col: str = "gvkey",
                 date_col: str = "datadate") -> pd.DataFrame:
    """
    添加 run_id（每个公司从 1 开始的稠密整数）、run_pos（run 内 0 起位置）、
    run_len（run 内记录数）。输出按 (firm, date) 排序。
    """
    ties = df.duplicated([firm_col, date_col], keep=False)
    if ties.any():
        raise DataIntegrityError(
            f"{int(ties.sum())} 行 datadate 同公司重复，须先做重复记录处理"
        )

    out = df.sort_values([firm_col, date_col], kind="mergesort").reset_index(drop=True)
    if out.empty:
        for c in ["run_id", "run_pos", "run_len"]:
            out[c] = pd.Series(dtype=int)
        return out

    grp = out.groupby(firm_col, sort=False)
    gap = grp[date_col].diff().dt.days
    expected = expected_quarter_length(out[date_col]).astype(float)

    # 公司首条记录 gap 为 NaN → 新 run
    new_run = gap.isna() | ((gap - expected).abs() > tolerance)
    out["run_id"] = new_run.astype(int).groupby(out[firm_col], sort=False).cumsum()

    run_grp = out.groupby([firm_col, "run_id"], sort=False)
    out["run_pos"] = run_grp.cumcount()
    out["run_len"] = run_grp[date_col].transform("size")
    return out


def run_summary(df: pd.DataFrame, firm_col: str = "gvkey") -> dict:
    """run 结构的描述性计数，写入阶段诊断。"""
    if df.empty:
        return {"firms": 0, "runs": 0}
    runs = df.groupby([firm_col, "run_id"]).size()
    per_firm = df.groupby(firm_col)["run_id"].max()
    return {
        "firms": int(df[firm_col].nunique()),
        "runs": int(len(runs)),
        "firms_multi_run": int((per_firm > 1).sum()),
        "run_len_median": float(runs.median()),
        "run_len_max": int(runs.max()),
        "single_quarter_runs": int((runs == 1).sum()),
    }
