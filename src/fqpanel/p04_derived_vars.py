#!/usr/bin/env python3
"""
p04_derived_vars.py — 第四步：财务控制变量构造
===============================================
所有滞后值只在同一 (gvkey, run_id) 内取，跨 run 的 [_n-1] 一律为缺失。

变量对照表:
───────────────────────────────────────────────────────────
 变量       | 公式                                | Compustat 字段
───────────────────────────────────────────────────────────
 lev        | (DLTTQ + DLCQ) / ATQ                | dlttq, dlcq, atq
 d_lev      | lev − lev[_n-1]                     | —
 liq        | CHEQ / ATQ                          | cheq, atq
 inv        | ln(PPENTQ) − ln(PPENTQ[_n-1])       | ppentq
 cf         | (IBQ + DPQ) / ATQ[_n-1]             | ibq, dpq, atq
 sales_g    | ln(SALEQ) − ln(SALEQ[_n-1])         | saleq
 size       | ln(ATQ)                             | atq
 rd         | XRDQ / ATQ[_n-1]                    | xrdq, atq
 cur_ratio  | ACTQ / LCTQ                         | actq, lctq
───────────────────────────────────────────────────────────

注:
  ATQ / PPENTQ 的 run 内部缺口先做线性插值（只补内部，不外推），
  并保留 <col>_interp 标记。

输入: data/processed/pipeline/s03_fundq_runs.csv
输出: data/processed/pipeline/s04_fundq_vars.csv
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import List

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel.utils import clean_inf, read_stage, write_counts


RUN_KEY = ["gvkey", "run_id"]
INPUT_COLS = ["atq", "ppentq", "saleq", "dlttq", "dlcq", "cheq", "actq",
              "lctq", "ibq", "dpq", "xrdq", "ceqq", "prccq", "cshoq"]
RATIO_COLS = ["lev", "d_lev", "liq", "inv", "cf", "sales_g", "size",
              "rd", "cur_ratio"]


def _log_pos(s: pd.Series) -> pd.Series:
    """只对正值取对数，非正值记为缺失。"""
    return np.log(s.where(s > 0))


def interpolate_within_run(df: pd.DataFrame, cols: List[str]) -> pd.DataFrame:
    """run 内部线性插值；首尾缺失不补。输入须已按 (gvkey, datadate) 排序。"""
    out = df.copy()
    for c in cols:
        if c not in out.columns:
            continue
        filled = out.groupby(RUN_KEY, sort=False)[c].transform(
            lambda s: s.interpolate(limit_area="inside")
        )
        out[f"{c}_interp"] = out[c].isna() & filled.notna()
        out[c] = filled
    return out


def build_derived_vars(df: pd.DataFrame, cfg: PipelineConfig) -> pd.DataFrame:
    out = df.sort_values(["gvkey", "datadate"]).reset_index(drop=True)
    for c in INPUT_COLS:
        if c not in out.columns:
            out[c] = np.nan
    out = interpolate_within_run(out, cfg.interpolate_cols)

    g = out.groupby(RUN_KEY, sort=False)
    lag_at = g["atq"].shift(1)
    lag_ppent = g["ppentq"].shift(1)
    lag_sale = g["saleq"].shift(1)

    # ── 4.1 资本结构 / 流动性 ───────────────────────────────────
    out["lev"] = (out["dlttq"] + out["dlcq"].fillna(0)) / out["atq"]
    out["d_lev"] = out["lev"] - out.groupby(RUN_KEY, sort=False)["lev"].shift(1)
    out["liq"] = out["cheq"] / out["atq"]
    out["cur_ratio"] = out["actq"] / out["lctq"]

    # ── 4.2 投资 / 现金流 / 成长 ────────────────────────────────
    out["inv"] = _log_pos(out["ppentq"]) - _log_pos(lag_ppent)
    out["cf"] = (out["ibq"] + out["dpq"].fillna(0)) / lag_at
    out["sales_g"] = _log_pos(out["saleq"]) - _log_pos(lag_sale)
    out["size"] = _log_pos(out["atq"])

    # ── 4.3 R&D ─────────────────────────────────────────────────
    out["rd_missing"] = out["xrdq"].isna()
    xrd = out["xrdq"].fillna(0) if cfg.fill_missing_rd else out["xrdq"]
    out["rd"] = xrd / lag_at

    out = clean_inf(out, RATIO_COLS)

    # ── 4.4 行业 ────────────────────────────────────────────────
    if "sic" in out.columns:
        out["sic2"] = (pd.to_numeric(out["sic"], errors="coerce") // 100).astype("Int64")
    return out


def run(cfg: PipelineConfig) -> Path:
    ensure_dirs(cfg)
    pipe = Path(cfg.pipeline_dir)
    counts = {}

    print("[p04] 读取 s03 ...")
    df = read_stage(pipe / "s03_fundq_runs.csv",
                    ["datadate", "qend_t0", "qend_t1", "qend_t2"])
    counts["input_rows"] = len(df)

    print("[p04] 构造财务变量 ...")
    out = build_derived_vars(df, cfg)

    for c in cfg.interpolate_cols:
        if f"{c}_interp" in out.columns:
            counts[f"{c}_interpolated"] = int(out[f"{c}_interp"].sum())
    counts["rd_missing"] = int(out["rd_missing"].sum())
    counts["valid_pct"] = {
        c: round(float(out[c].notna().mean()) * 100, 1) for c in RATIO_COLS
    } if len(out) else {}
    counts["output_rows"] = len(out)

    out_path = pipe / "s04_fundq_vars.csv"
    out.to_csv(out_path, index=False)
    write_counts(pipe / "s04_counts.json", counts)
    print(f"[p04] 完成 → {out_path}  ({len(out)} rows)")
    return out_path


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
