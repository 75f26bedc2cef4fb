#!/usr/bin/env python3
"""
checks.py — 数据完整性校验
==========================
  1) 原始记录 schema 校验（缺列 → 报错；坏记录 → 剔除并计数）
  2) 各阶段的后置不变量：键唯一、run 编号稠密、run 内连续、季末时刻单调

后置不变量失败说明是代码错误而非脏数据，直接抛 DataIntegrityError。
"""
from __future__ import annotations

from typing import List, Tuple

import pandas as pd

from fqpanel.fiscal_calendar import expected_quarter_length


class DataIntegrityError(RuntimeError):
    """数据违反了管道依赖的结构性约束。"""


class DuplicateKeyError(DataIntegrityError):
    """同一 (gvkey, datadate) 出现 2 条以上原始记录。"""


class SchemaError(ValueError):
    """源表缺少必需字段。"""


REQUIRED_COLS = ["gvkey", "datadate", "fyearq", "fqtr", "datacqtr"]
KEY = ["gvkey", "datadate"]


# ═══════════════════════════════════════════════════════════════════
# Schema
# ═══════════════════════════════════════════════════════════════════

def check_required_columns(df: pd.DataFrame, cols: List[str],
                           table: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise SchemaError(f"{table} 缺少必需字段: {missing}")


def validate_records(df: pd.DataFrame,
                     num_cols: List[str] = ()) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    逐条校验 fundq 原始记录，返回 (合格记录, 剔除记录)。
    剔除记录带 reject_reason，按第一条失败的规则记。
    num_cols 中存在的字段：原值非空却无法解析为数值 → bad_<字段>；
    合格记录的这些字段转为 float。
    """
    check_required_columns(df, REQUIRED_COLS, "fundq")
    d = df.copy()
    d["gvkey"] = d["gvkey"].astype("string").str.strip()
    d["datadate"] = pd.to_datetime(d["datadate"], errors="coerce")
    fyearq = pd.to_numeric(d["fyearq"], errors="coerce")
    fqtr = pd.to_numeric(d["fqtr"], errors="coerce")
    cq = d["datacqtr"].astype("string").str.strip().str.upper()

    rules = [
        ("missing_gvkey", d["gvkey"].isna() | (d["gvkey"] == "")),
        ("bad_datadate", d["datadate"].isna()),
        ("bad_fyearq", fyearq.isna() | (fyearq % 1 != 0)),
        ("bad_fqtr", ~fqtr.isin([1, 2, 3, 4])),
        ("bad_datacqtr", ~cq.str.fullmatch(r"\d{4}Q[1-4]").fillna(False).astype(bool)),
    ]
    nums = {}
    for c in num_cols:
        if c not in d.columns:
            continue
        nums[c] = pd.to_numeric(d[c], errors="coerce").astype(float)
        # 空白视为缺失，不是类型错误
        blank = d[c].isna() | d[c].astype("string").str.strip().eq("")
        rules.append((f"bad_{c}", ~blank & nums[c].isna()))

    reason = pd.Series(pd.NA, index=d.index, dtype="string")
    for name, bad in rules:
        reason = reason.mask(reason.isna() & bad.fillna(True), name)

    bad_mask = reason.notna()
    rejects = d.loc[bad_mask].copy()
    rejects["reject_reason"] = reason[bad_mask]

    good = d.loc[~bad_mask].copy()
    good["fyearq"] = fyearq[~bad_mask].astype(int)
    good["fqtr"] = fqtr[~bad_mask].astype(int)
    good["datacqtr"] = cq[~bad_mask]
    for c, v in nums.items():
        good[c] = v[~bad_mask]
    return good, rejects


# ═══════════════════════════════════════════════════════════════════
# 后置不变量
# ═══════════════════════════════════════════════════════════════════

def check_unique_key(df: pd.DataFrame, keys: List[str] = KEY,
                     stage: str = "") -> None:
    dup = df.duplicated(keys, keep=False)
    if dup.any():
        sample = df.loc[dup, keys].head(5).to_dict("records")
        raise DataIntegrityError(
            f"[{stage}] {int(dup.sum())} 行违反键唯一 {keys}，例: {sample}"
        )


def check_runs(df: pd.DataFrame, tolerance: int = 7,
               firm_col: str = "gvkey", date_col: str = "datadate") -> None:
    """
    run 编号稠密且按日期单调：每个公司 run_id 为 {1..k}，相邻记录增量 ∈ {0, 1}；
    同一 run 内相邻记录间隔落在 [expected-tol, expected+tol]。
    """
    if df.empty:
        return
    d = df.sort_values([firm_col, date_col])
    grp = d.groupby(firm_col, sort=False)

    first = grp["run_id"].transform("first")
    if (first != 1).any():
        raise DataIntegrityError("run_id 未从 1 开始")

    step = grp["run_id"].diff().dropna()
    if not step.isin([0, 1]).all():
        raise DataIntegrityError("run_id 不稠密或非单调")

    gap = grp[date_col].diff().dt.days
    expected = expected_quarter_length(d[date_col])
    same_run = grp["run_id"].diff() == 0
    off = same_run & ((gap - expected).abs() > tolerance)
    if off.any():
        raise DataIntegrityError(
            f"{int(off.sum())} 条记录与同 run 前一条间隔超出容差"
        )


def check_endpoints(df: pd.DataFrame) -> None:
    """qend_t2 < qend_t1 < qend_t0。"""
    if df.empty:
        return
    bad1 = df["qend_t1"].notna() & (df["qend_t1"] >= df["qend_t0"])
    bad2 = df["qend_t2"].notna() & (df["qend_t2"] >= df["qend_t1"])
    if bad1.any() or bad2.any():
        raise DataIntegrityError(
            f"季末时刻非单调: t1>=t0 {int(bad1.sum())} 行, "
            f"t2>=t1 {int(bad2.sum())} 行"
        )
