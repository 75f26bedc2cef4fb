#!/usr/bin/env python3
"""
p02_dedup.py — 第二步：(gvkey, datadate) 去重
==============================================
规则见 dedup.py。人工覆盖表只在通用规则无法判定时使用，
作为带版本的数据文件维护（data/config/duplicate_overrides.csv），
不在代码里写死任何公司/日期。

输入: data/processed/pipeline/s01_fundq_raw.csv
输出:
  data/processed/pipeline/s02_fundq_dedup.csv
  data/processed/pipeline/s02_rejects.csv
  data/processed/pipeline/s02_counts.json
"""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel.dedup import load_overrides, resolve_duplicates
from fqpanel.utils import read_stage, write_counts


def run(cfg: PipelineConfig) -> Path:
    ensure_dirs(cfg)
    pipe = Path(cfg.pipeline_dir)

    print("[p02] 读取 s01 ...")
    raw = read_stage(pipe / "s01_fundq_raw.csv", ["datadate"])

    overrides = load_overrides(cfg.dup_override_path)
    print(f"[p02] 覆盖表 {len(overrides)} 条")

    print("[p02] 处理重复键 ...")
    out, rejects, counts = resolve_duplicates(
        raw, cfg.dedup_fields, overrides, strict=cfg.strict_duplicates
    )
    counts["override_entries"] = len(overrides)
    counts["override_entries_invalid"] = overrides.attrs.get("invalid_entries", 0)

    out_path = pipe / "s02_fundq_dedup.csv"
    out.to_csv(out_path, index=False)
    rejects.to_csv(pipe / "s02_rejects.csv", index=False)
    write_counts(pipe / "s02_counts.json", counts)

    print(f"[p02] 成对键 {counts['keys_pair']}: "
          f"半相同 {counts['keys_semi_identical']}, "
          f"日历季度 {counts['keys_calendar_quarter']}, "
          f"覆盖表 {counts['keys_override']}, "
          f"无法判定 {counts['keys_irreconcilable']}")
    print(f"[p02] 完成 → {out_path}  ({len(out)} rows)")
    return out_path


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
