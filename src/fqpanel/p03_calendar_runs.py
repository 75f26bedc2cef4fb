#!/usr/bin/env python3
"""
p03_calendar_runs.py — 第三步：季度日历对齐 + run 切分
=======================================================
  1) 日历季度标签 cal_label / cal_quarter / in_cal_quarter
  2) 季末时刻 qend_t0 / qend_t1 / qend_t2（见 fiscal_calendar.py）
  3) run_id：连续 ~3 个月报告期的最大序列（见 runs.py）
  4) 后置校验：键唯一、run 稠密连续、季末时刻单调

间隔超出容差只是开新 run 的信号，不是错误；
找不到 89–92 天前的记录也不是错误（lag_unavailable = True）。

输入: data/processed/pipeline/s02_fundq_dedup.csv
输出:
  data/processed/pipeline/s03_fundq_runs.csv
  data/processed/pipeline/s03_counts.json
"""
from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from fqpanel.checks import KEY, check_endpoints, check_runs, check_unique_key
from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel.fiscal_calendar import add_calendar_labels, align_quarter_endpoints
from fqpanel.runs import run_summary, segment_runs
from fqpanel.utils import read_stage, write_counts


ENDPOINT_COLS = ["qend_t0", "qend_t1", "qend_t2"]


def build_calendar_runs(df: pd.DataFrame, cfg: PipelineConfig) -> pd.DataFrame:
    """去重后的面板 → 带日历字段与 run_id 的面板（纯函数，可重复执行）。"""
    check_unique_key(df, KEY, stage="p03")
    out = add_calendar_labels(df)
    out = align_quarter_endpoints(
        out, lag_lo=cfg.lag_days_lo, lag_hi=cfg.lag_days_hi
    )
    out = segment_runs(out, tolerance=cfg.run_gap_tolerance)
    check_runs(out, tolerance=cfg.run_gap_tolerance)
    check_endpoints(out)
    return out


def run(cfg: PipelineConfig) -> Path:
    ensure_dirs(cfg)
    pipe = Path(cfg.pipeline_dir)
    counts = {}

    print("[p03] 读取 s02 ...")
    df = read_stage(pipe / "s02_fundq_dedup.csv", ["datadate"] + ENDPOINT_COLS)
    counts["input_rows"] = len(df)

    print("[p03] 日历对齐与 run 切分 ...")
    out = build_calendar_runs(df, cfg)

    counts["in_cal_quarter"] = int(out["in_cal_quarter"].sum())
    counts["lag_unavailable"] = int(out["lag_unavailable"].sum())
    counts["lag2_unavailable"] = int(out["lag2_unavailable"].sum())
    counts.update({f"run_{k}": v for k, v in run_summary(out).items()})
    counts["output_rows"] = len(out)

    out_path = pipe / "s03_fundq_runs.csv"
    out.to_csv(out_path, index=False)
    write_counts(pipe / "s03_counts.json", counts)
    print(f"[p03] {counts['run_firms']} 家公司, {counts['run_runs']} 个 run, "
          f"lag 缺失 {counts['lag_unavailable']}")
    print(f"[p03] 完成 → {out_path}  ({len(out)} rows)")
    return out_path


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
