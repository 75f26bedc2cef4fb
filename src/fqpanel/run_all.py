#!/usr/bin/env python3
"""
run_all.py — 完整管道入口
===========================
按顺序执行 p01 → p08，构建 firm-quarter 分析样本。

使用方法:
  python src/fqpanel/run_all.py [--选项]

管道步骤:
  p01  读取 Compustat fundq 与 schema 校验
  p02  (gvkey, datadate) 去重
  p03  季度日历对齐与 run 切分
  p04  财务控制变量构造（run 内滞后）
  p05  专利变量合并（PatentsView + KPSS）
  p06  市场变量与货币政策冲击对齐
  p07  样本筛选与缩尾
  p08  输出样本递减表与描述性统计

所有中间数据保存在 data/processed/pipeline/，可逐步调试。
"""
from __future__ import annotations

import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel import (
    p01_load_fundq,
    p02_dedup,
    p03_calendar_runs,
    p04_derived_vars,
    p05_innovation,
    p06_market_shocks,
    p07_build_sample,
    p08_export,
)


STEPS = [
    ("p01 读取 fundq 与校验",   p01_load_fundq.run),
    ("p02 重复记录处理",        p02_dedup.run),
    ("p03 日历对齐与 run 切分", p03_calendar_runs.run),
    ("p04 财务变量构造",        p04_derived_vars.run),
    ("p05 专利变量合并",        p05_innovation.run),
    ("p06 市场变量与冲击对齐",  p06_market_shocks.run),
    ("p07 样本筛选",            p07_build_sample.run),
    ("p08 输出表格",            p08_export.run),
]


def main() -> None:
    cfg = PipelineConfig.from_cli()
    ensure_dirs(cfg)

    # 保存本次运行配置
    cfg.save(Path(cfg.pipeline_dir) / "run_config.json")

    t0 = time.time()
    print("=" * 60)
    print("Compustat firm-quarter 面板构建管道")
    print("=" * 60)

    for i, (name, func) in enumerate(STEPS, 1):
        print(f"\n{'─' * 60}")
        print(f"[{i}/{len(STEPS)}] {name}")
        print(f"{'─' * 60}")
        ts = time.time()
        func(cfg)
        print(f"  ⏱ {time.time() - ts:.1f}s")

    print(f"\n{'=' * 60}")
    print(f"全部完成  总耗时 {time.time() - t0:.1f}s")
    print(f"中间数据: {cfg.pipeline_dir}/")
    print(f"最终输出: {cfg.output_dir}/")
    print(f"{'=' * 60}")


if __name__ == "__main__":
    main()
