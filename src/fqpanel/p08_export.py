#!/usr/bin/env python3
"""
p08_export.py — 第八步：输出样本递减表与描述性统计
===================================================
  Table 1  样本构建：各阶段剔除数
           (schema 校验 → 去重 → 样本筛选)
  Table 2  描述性统计：N, Mean, SD, P25, Median, P75

格式：
  - Markdown（便于预览）
  - LaTeX（直接嵌入论文）
  - Word（python-docx，三线表样式）

输入:
  data/processed/pipeline/s01_counts.json
  data/processed/pipeline/s02_counts.json
  data/processed/pipeline/s03_counts.json
  data/processed/pipeline/s07_attrition.json
  data/processed/pipeline/s07_analysis_sample.csv
输出:
  outputs/table1_sample_construction.{md,tex}
  outputs/table2_summary_stats.{md,tex}
  outputs/panel_tables.docx
  outputs/pipeline_diagnostics.json
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List

import pandas as pd
from docx import Document
from docx.enum.table import WD_TABLE_ALIGNMENT
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml.ns import qn

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel.utils import (fmt_est, fmt_int, latex_escape, read_counts,
                           read_stage, write_counts)


STAT_VARS = [
    ("lev", "Leverage"),
    ("d_lev", "ΔLeverage"),
    ("liq", "Liquidity"),
    ("inv", "Investment"),
    ("cf", "Cash flow"),
    ("sales_g", "Sales growth"),
    ("size", "Size"),
    ("rd", "R&D / assets"),
    ("tobin_q", "Tobin's Q"),
    ("npat", "Patents"),
    ("ln_kpss", "ln(1 + KPSS value)"),
    ("mp_shock", "MP shock"),
]


# ═══════════════════════════════════════════════════════════════════
# 表格构建
# ═══════════════════════════════════════════════════════════════════

def calc_stats(s: pd.Series) -> Dict[str, float]:
    s = pd.to_numeric(s, errors="coerce")
    return {
        "n": int(s.notna().sum()),
        "mean": float(s.mean()),
        "sd": float(s.std(ddof=1)),
        "p25": float(s.quantile(0.25)),
        "median": float(s.quantile(0.50)),
        "p75": float(s.quantile(0.75)),
    }


def build_summary_df(sample: pd.DataFrame) -> pd.DataFrame:
    rows = []
    for col, label in STAT_VARS:
        if col not in sample.columns:
            continue
        st = calc_stats(sample[col])
        rows.append({
            "Variable": label,
            "N": fmt_int(st["n"]),
            "Mean": fmt_est(st["mean"]),
            "SD": fmt_est(st["sd"]),
            "P25": fmt_est(st["p25"]),
            "Median": fmt_est(st["median"]),
            "P75": fmt_est(st["p75"]),
        })
    return pd.DataFrame(rows, columns=["Variable", "N", "Mean", "SD",
                                       "P25", "Median", "P75"])


def build_attrition_df(s01: Dict, s02: Dict, s03: Dict,
                       s07: Dict) -> pd.DataFrame:
    """把各阶段计数整理成 (Step, Deleted, Remaining) 表。"""
    rows = []
    if s01:
        rows.append(("Compustat fundq firm-quarters (standard filters)",
                     "", s01.get("fundq_after_std_filter")))
        rows.append(("Schema violations", s01.get("schema_rejected"),
                     s01.get("output_rows")))
    if s02:
        rows.append(("Semi-identical duplicates merged",
                     s02.get("keys_semi_identical"), ""))
        rows.append(("Duplicate keys with >2 records",
                     s02.get("keys_over_multiplicity"), ""))
        rows.append(("Irreconcilable duplicate pairs",
                     s02.get("keys_irreconcilable"), s02.get("output_rows")))
    if s03:
        rows.append(("Firm-quarter runs", "", s03.get("run_runs")))
    for a in (s07 or {}).get("attrition", []):
        if a["step"] == "start":
            continue
        rows.append((a["step"].replace("_", " "), a["deleted"], a["remaining"]))
    return pd.DataFrame(
        [(s, fmt_int(d) if d != "" else "", fmt_int(r) if r != "" else "")
         for s, d, r in rows],
        columns=["Step", "Deleted", "Remaining"],
    )


def write_md(path: Path, title: str, subtitle: str,
             df: pd.DataFrame) -> None:
    lines = [f"# {title}", "", subtitle, "", df.to_markdown(index=False)]
    path.write_text("\n".join(lines), encoding="utf-8")


def write_tex(path: Path, title: str, df: pd.DataFrame, note: str) -> None:
    cols = list(df.columns)
    lines = []
    lines.append(r"\begin{table}[!htbp]\centering")
    lines.append(r"\small")
    lines.append(rf"\caption{{{latex_escape(title)}}}")
    lines.append(r"\begin{tabular}{l" + "r" * (len(cols) - 1) + "}")
    lines.append(r"\toprule")
    lines.append(" & ".join(latex_escape(c) for c in cols) + r"\\")
    lines.append(r"\midrule")
    for _, r in df.iterrows():
        lines.append(" & ".join(latex_escape(str(r[c])) for c in cols) + r"\\")
    lines.append(r"\bottomrule")
    lines.append(r"\end{tabular}")
    lines.append(
        rf"\vspace{{0.3em}}\par\footnotesize{{{latex_escape(note)}}}"
    )
    lines.append(r"\end{table}")
    path.write_text("\n".join(lines), encoding="utf-8")


# ═══════════════════════════════════════════════════════════════════
# Word
# ═══════════════════════════════════════════════════════════════════

def apply_font(doc: Document) -> None:
    style = doc.styles["Normal"]
    style.font.name = "Times New Roman"
    style._element.rPr.rFonts.set(qn("w:eastAsia"), "Times New Roman")


def center_cell(cell) -> None:
    for p in cell.paragraphs:
        p.alignment = WD_ALIGN_PARAGRAPH.CENTER


def add_table(doc: Document, headers: List[str], rows: List[List[str]]) -> None:
    t = doc.add_table(rows=1 + len(rows), cols=len(headers))
    t.style = "Table Grid"
    t.alignment = WD_TABLE_ALIGNMENT.CENTER
    for j, h in enumerate(headers):
        t.cell(0, j).text = h
        center_cell(t.cell(0, j))
    for i, row in enumerate(rows, start=1):
        for j, v in enumerate(row):
            t.cell(i, j).text = str(v)
            if j > 0:
                center_cell(t.cell(i, j))


def write_word(path: Path, tables: List) -> None:
    doc = Document()
    apply_font(doc)
    for title, df in tables:
        h = doc.add_heading(title, level=2)
        h.alignment = WD_ALIGN_PARAGRAPH.LEFT
        add_table(doc, list(df.columns), df.values.tolist())
        doc.add_paragraph()
    doc.save(str(path))


# ═══════════════════════════════════════════════════════════════════
# 主流程
# ═══════════════════════════════════════════════════════════════════

def run(cfg: PipelineConfig) -> None:
    ensure_dirs(cfg)
    out_dir = Path(cfg.output_dir)
    pipe = Path(cfg.pipeline_dir)

    s01 = read_counts(pipe / "s01_counts.json")
    s02 = read_counts(pipe / "s02_counts.json")
    s03 = read_counts(pipe / "s03_counts.json")
    s07 = read_counts(pipe / "s07_attrition.json")

    print("[p08] 构建样本递减表 ...")
    t1 = build_attrition_df(s01, s02, s03, s07)

    print("[p08] 构建描述性统计 ...")
    sample = read_stage(pipe / "s07_analysis_sample.csv", ["datadate"])
    t2 = build_summary_df(sample)

    write_md(out_dir / "table1_sample_construction.md",
             "TABLE 1 Sample construction",
             "Firm-quarter observations, Compustat fundq", t1)
    write_tex(out_dir / "table1_sample_construction.tex",
              "Sample construction", t1,
              "Deleted counts for duplicate steps are firm-quarter keys.")
    write_md(out_dir / "table2_summary_stats.md",
             "TABLE 2 Summary statistics",
             f"Analysis sample: {len(sample)} firm-quarters, "
             f"{sample['gvkey'].nunique()} firms", t2)
    write_tex(out_dir / "table2_summary_stats.tex",
              "Summary statistics", t2,
              f"Continuous variables winsorized at the "
              f"{cfg.winsor_lo:.0%} and {cfg.winsor_hi:.0%} levels.")

    print("[p08] 格式化 Word 文档 ...")
    write_word(out_dir / "panel_tables.docx", [
        ("Table 1. Sample construction", t1),
        ("Table 2. Summary statistics", t2),
    ])

    # ── 综合诊断 ────────────────────────────────────────────────
    diag = {}
    for f in ["s01_counts.json", "s02_counts.json", "s03_counts.json",
              "s04_counts.json", "s05_counts.json", "s06_counts.json",
              "s07_attrition.json"]:
        diag[f.replace(".json", "")] = read_counts(pipe / f)
    write_counts(out_dir / "pipeline_diagnostics.json", diag)
    print(f"[p08] 完成 → {out_dir}/")


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
