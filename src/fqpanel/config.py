#!/usr/bin/env python3
"""
config.py — 全局配置
====================
集中管理所有路径、参数、开关。
与 Compustat 季度数据清洗规则对应的参数均标注出处（字段/规则）。
"""
from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List


DEDUP_FIELDS = [
    "atq", "ltq", "saleq", "ppentq", "dlttq", "dlcq", "cheq",
    "actq", "lctq", "ibq", "dpq", "xrdq", "oiadpq", "ceqq",
    "cshoq", "prccq",
]


@dataclass
class PipelineConfig:
    """全部可配置参数，均附数据/规则依据。"""

    # ── 原始数据路径 ──────────────────────────────────────────────
    comp_fundq_path: str = "data/raw/compustat/fundq_1985_2019.csv"
    dup_override_path: str = "data/config/duplicate_overrides.csv"
    patents_path: str = "data/raw/patentsview/patent_gvkey.tsv"
    kpss_path: str = "data/raw/kpss/KPSS_2020_public.csv"
    crsp_path: str = "data/raw/crsp/msf_gvkey.csv"
    shocks_path: str = "data/raw/shocks/mp_shocks.csv"

    # ── 输出路径 ──────────────────────────────────────────────────
    output_dir: str = "outputs"
    processed_dir: str = "data/processed"
    pipeline_dir: str = "data/processed/pipeline"

    # ── 样本区间（按 fyearq） ─────────────────────────────────────
    year_start: int = 1990
    year_end: int = 2019

    # ── 季度窗口 ─────────────────────────────────────────────────
    #  前一条记录距当期 89–92 天（含端点）才视为“上一季度”
    lag_days_lo: int = 89
    lag_days_hi: int = 92
    #  run 切分容差：|gap - expected| <= 7 天视为连续
    #  （公司偶尔把季末日挪动最多 ~6 天，并非真正断档）
    run_gap_tolerance: int = 7

    # ── 重复记录判定字段 ────────────────────────────────────────
    dedup_fields: List[str] = field(default_factory=lambda: list(DEDUP_FIELDS))
    #  True = 同一 (gvkey, datadate) 超过 2 条时直接报错终止
    #  False = 剔除该键并计入 reject 统计
    strict_duplicates: bool = False

    # ── 衍生变量 ────────────────────────────────────────────────
    #  run 内部插值的存量变量（只补内部缺口）
    interpolate_cols: List[str] = field(
        default_factory=lambda: ["atq", "ppentq"]
    )
    #  xrdq 缺失按 0 处理（同时保留 rd_missing 标记）
    fill_missing_rd: bool = True
    #  专利数据中找不到的 firm-quarter 计为 0 件
    fill_patents_zero: bool = True

    # ── 样本筛选 ────────────────────────────────────────────────
    #  金融业 (SIC 6000-6999) 始终剔除；公用事业为可选开关
    exclude_utility: bool = True
    #  |sales growth| 超过该值视为并购/重组，剔除
    max_abs_sales_growth: float = 1.0

    # ── 缩尾 ────────────────────────────────────────────────────
    winsor_lo: float = 0.01
    winsor_hi: float = 0.99

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2, ensure_ascii=False),
                        encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "PipelineConfig":
        d = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_cli(cls, argv=None) -> "PipelineConfig":
        p = argparse.ArgumentParser(
            description="Compustat 季度 firm-quarter 面板构建管道"
        )
        p.add_argument("--comp-fundq", dest="comp_fundq_path",
                       default=cls.comp_fundq_path)
        p.add_argument("--dup-overrides", dest="dup_override_path",
                       default=cls.dup_override_path)
        p.add_argument("--patents", dest="patents_path",
                       default=cls.patents_path)
        p.add_argument("--kpss", dest="kpss_path",
                       default=cls.kpss_path)
        p.add_argument("--crsp", dest="crsp_path",
                       default=cls.crsp_path)
        p.add_argument("--shocks", dest="shocks_path",
                       default=cls.shocks_path)
        p.add_argument("--output-dir", dest="output_dir",
                       default=cls.output_dir)
        p.add_argument("--processed-dir", dest="processed_dir",
                       default=cls.processed_dir)
        p.add_argument("--pipeline-dir", dest="pipeline_dir",
                       default=cls.pipeline_dir)
        p.add_argument("--year-start", dest="year_start", type=int,
                       default=cls.year_start)
        p.add_argument("--year-end", dest="year_end", type=int,
                       default=cls.year_end)
        p.add_argument("--run-gap-tolerance", dest="run_gap_tolerance",
                       type=int, default=cls.run_gap_tolerance)
        p.add_argument("--strict-duplicates", dest="strict_duplicates",
                       action="store_true")
        p.add_argument("--keep-utility", dest="exclude_utility",
                       action="store_false")
        p.add_argument("--no-fill-rd", dest="fill_missing_rd",
                       action="store_false")
        p.add_argument("--max-abs-sales-growth", dest="max_abs_sales_growth",
                       type=float, default=cls.max_abs_sales_growth)
        args = p.parse_args(argv)
        return cls(**{k: v for k, v in vars(args).items()
                      if k in cls.__dataclass_fields__})


def ensure_dirs(cfg: PipelineConfig) -> None:
    """创建所有输出目录。"""
    for d in [cfg.output_dir, cfg.processed_dir, cfg.pipeline_dir]:
        Path(d).mkdir(parents=True, exist_ok=True)
