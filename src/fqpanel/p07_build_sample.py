#!/usr/bin/env python3
"""
p07_build_sample.py — 第七步：样本筛选与缩尾
=============================================
固定顺序的筛选条件，逐步记录删除数（样本递减表）：

  firm-quarters after p06
  - fyearq 不在 [year_start, year_end]
  - 金融业 SIC 6000-6999（及可选公用事业 4900-4999）
  - ATQ <= 0 或缺失
  - SALEQ < 0
  - lev / liq 不在 [0, 1]
  - |sales_g| > max_abs_sales_growth（并购/重组）
  - 分析变量缺失
  = analysis sample

之后对连续变量统一缩尾一次（winsor_lo / winsor_hi）。

输入: data/processed/pipeline/s06_panel_shocks.csv
输出:
  data/processed/pipeline/s07_analysis_sample.csv
  data/processed/pipeline/s07_attrition.json
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Tuple

import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel.utils import read_stage, winsorize_columns, write_counts


REQUIRED_VARS = ["lev", "liq", "inv", "cf", "sales_g", "size", "rd"]

WINSOR_VARS = [
    "lev", "d_lev", "liq", "inv", "cf", "sales_g", "size", "rd",
    "cur_ratio", "tobin_q", "ln_kpss",
]


def apply_censoring(df: pd.DataFrame,
                    cfg: PipelineConfig) -> Tuple[pd.DataFrame, List[Dict]]:
    """按固定顺序执行筛选，返回 (样本, 递减记录)。"""
    d = df.copy()
    attrition = [{"step": "start", "deleted": 0, "remaining": len(d)}]

    def _drop(step: str, keep: pd.Series) -> None:
        nonlocal d
        keep = keep.fillna(False).astype(bool)
        attrition.append({
            "step": step,
            "deleted": int((~keep).sum()),
            "remaining": int(keep.sum()),
        })
        d = d.loc[keep].copy()

    _drop("fyearq_outside_window",
          d["fyearq"].between(cfg.year_start, cfg.year_end))

    if "sic" in d.columns:
        sic = pd.to_numeric(d["sic"], errors="coerce")
        keep = sic.notna() & ~sic.between(6000, 6999)
        if cfg.exclude_utility:
            keep &= ~sic.between(4900, 4999)
        _drop("financial_or_utility", keep)

    _drop("nonpositive_assets", d["atq"] > 0)
    _drop("negative_sales", ~(d["saleq"] < 0))
    _drop("lev_liq_outside_unit",
          d["lev"].between(0, 1) & d["liq"].between(0, 1))
    _drop("abs_sales_growth_gt_max",
          ~(d["sales_g"].abs() > cfg.max_abs_sales_growth))

    required = list(REQUIRED_VARS)
    if "mp_shock" in d.columns and d["mp_shock"].notna().any():
        required.append("mp_shock")
    _drop("missing_analysis_vars", d[required].notna().all(axis=1))

    d = winsorize_columns(
        d, [c for c in WINSOR_VARS if c in d.columns],
        lo=cfg.winsor_lo, hi=cfg.winsor_hi,
    )
    return d.reset_index(drop=True), attrition


def run(cfg: PipelineConfig) -> Path:
    ensure_dirs(cfg)
    pipe = Path(cfg.pipeline_dir)

    print("[p07] 读取 s06 ...")
    df = read_stage(pipe / "s06_panel_shocks.csv",
                    ["datadate", "qend_t0", "qend_t1", "qend_t2"])

    print("[p07] 样本筛选 ...")
    sample, attrition = apply_censoring(df, cfg)

    out_path = pipe / "s07_analysis_sample.csv"
    sample.to_csv(out_path, index=False)
    write_counts(pipe / "s07_attrition.json", {
        "attrition": attrition,
        "final_firms": int(sample["gvkey"].nunique()),
        "final_obs": len(sample),
    })

    print("[p07] 样本递减:")
    for a in attrition:
        print(f"       {a['step']}: -{a['deleted']} → {a['remaining']}")
    print(f"[p07] 完成 → {out_path}  ({len(sample)} rows)")
    return out_path


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
