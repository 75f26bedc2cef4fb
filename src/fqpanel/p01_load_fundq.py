#!/usr/bin/env python3
"""
p01_load_fundq.py — 第一步：读取 Compustat 季度表并做 schema 校验
==================================================================
  1) 读取 fundq（csv / tsv / dta / xlsx）
  2) 标准 Compustat 过滤：INDL / STD / C / D
  3) 逐条校验必需字段：gvkey, datadate, fyearq, fqtr (1-4), datacqtr (YYYYQn)
     数值字段（atq, saleq, ...）非空但无法解析 → 剔除 (bad_<字段>)
     坏记录剔除、计数并写出 reject 文件，不中断整批
  4) 数值字段统一转为 float

输出:
  data/processed/pipeline/s01_fundq_raw.csv
  data/processed/pipeline/s01_rejects.csv
  data/processed/pipeline/s01_counts.json
"""
from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from fqpanel.checks import validate_records
from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel.utils import load_compustat, write_counts


NUM_COLS = [
    "atq", "ltq", "saleq", "ppentq", "dlttq", "dlcq", "cheq",
    "actq", "lctq", "ibq", "dpq", "xrdq", "oiadpq", "ceqq",
    "cshoq", "prccq", "sic",
]

KEEP_COLS = ["gvkey", "datadate", "fyearq", "fqtr", "datacqtr",
             "conm", "tic", "cusip"] + NUM_COLS


def standard_filters(comp: pd.DataFrame) -> pd.DataFrame:
    """Compustat 标准过滤（列存在才生效）。"""
    for col, val in [("indfmt", "INDL"), ("datafmt", "STD"),
                     ("consol", "C"), ("popsrc", "D")]:
        if col in comp.columns:
            comp = comp[comp[col].astype(str).str.upper() == val]
    return comp


def run(cfg: PipelineConfig) -> Path:
    ensure_dirs(cfg)
    pipe = Path(cfg.pipeline_dir)
    counts = {}

    # ── 1.1 读取 fundq ──────────────────────────────────────────
    print("[p01] 读取 Compustat fundq ...")
    comp = load_compustat(cfg.comp_fundq_path)
    counts["fundq_raw_rows"] = len(comp)

    # ── 1.2 标准过滤 ────────────────────────────────────────────
    comp = standard_filters(comp)
    counts["fundq_after_std_filter"] = len(comp)

    # ── 1.3 schema 校验 ─────────────────────────────────────────
    good, rejects = validate_records(comp, NUM_COLS)
    counts["schema_rejected"] = len(rejects)
    if len(rejects):
        counts["schema_rejected_by_reason"] = (
            rejects["reject_reason"].value_counts().to_dict()
        )
        print(f"[p01] schema 校验剔除 {len(rejects)} 行: "
              f"{counts['schema_rejected_by_reason']}")

    # ── 1.4 保留字段（数值字段已在校验中转为 float） ────────────
    keep = [c for c in KEEP_COLS if c in good.columns]
    good = good[keep].sort_values(["gvkey", "datadate"])
    counts["output_rows"] = len(good)
    counts["unique_gvkey"] = int(good["gvkey"].nunique())

    # ── 输出 ─────────────────────────────────────────────────────
    out_path = pipe / "s01_fundq_raw.csv"
    good.to_csv(out_path, index=False)
    rejects.to_csv(pipe / "s01_rejects.csv", index=False)
    write_counts(pipe / "s01_counts.json", counts)
    print(f"[p01] 完成 → {out_path}  ({len(good)} rows)")
    return out_path


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
