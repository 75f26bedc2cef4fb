#!/usr/bin/env python3
"""
utils.py — 共用工具函数
========================
所有步骤共用的读取、标准化、缩尾、诊断输出函数。
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd


# ═══════════════════════════════════════════════════════════════════
# 标准化
# ═══════════════════════════════════════════════════════════════════

def norm_gvkey(v) -> str:
    """GVKEY 标准化：去非数字、补足 6 位前导零。"""
    if pd.isna(v):
        return ""
    s = re.sub(r"\D", "", str(v).split(".")[0])
    return s.zfill(6) if s else ""


# ═══════════════════════════════════════════════════════════════════
# 读取
# ═══════════════════════════════════════════════════════════════════

def load_table(path, **kwargs) -> pd.DataFrame:
    """按扩展名读取 csv / tsv / xlsx / dta，统一列名小写。"""
    path = Path(path)
    ext = path.suffix.lower()
    if ext == ".dta":
        d = pd.read_stata(path, convert_categoricals=False)
    elif ext in (".xlsx", ".xls"):
        d = pd.read_excel(path, **kwargs)
    elif ext == ".tsv":
        d = pd.read_csv(path, sep="\t", **kwargs)
    else:
        d = pd.read_csv(path, **kwargs)
    d.columns = [str(c).strip().lower() for c in d.columns]
    return d


def load_compustat(path) -> pd.DataFrame:
    """读取 Compustat fundq，gvkey 保持字符串（避免前导零丢失）。"""
    path = Path(path)
    if path.suffix.lower() in (".csv", ".tsv"):
        d = load_table(path, dtype={"gvkey": "string", "GVKEY": "string"})
    else:
        d = load_table(path)
    if "gvkey" in d.columns:
        d["gvkey"] = d["gvkey"].apply(norm_gvkey).astype("string")
    return d


def read_stage(path, date_cols: List[str] = ()) -> pd.DataFrame:
    """读取上一步输出的中间 csv：gvkey 保持字符串，恢复日期列。"""
    d = pd.read_csv(path, dtype={"gvkey": "string"}, low_memory=False)
    for c in date_cols:
        if c in d.columns:
            d[c] = pd.to_datetime(d[c], errors="coerce")
    if "gvkey" in d.columns:
        d["gvkey"] = d["gvkey"].apply(norm_gvkey).astype("string")
    return d


# ═══════════════════════════════════════════════════════════════════
# 缩尾
# ═══════════════════════════════════════════════════════════════════

def winsorize_series(s: pd.Series, lo: float = 0.01, hi: float = 0.99) -> pd.Series:
    """对连续变量进行缩尾处理：超出 [lo, hi] 分位的值替换为分位值。"""
    if s.dropna().empty:
        return s
    q_lo = s.quantile(lo)
    q_hi = s.quantile(hi)
    return s.clip(q_lo, q_hi)


def winsorize_columns(df: pd.DataFrame, cols: List[str],
                      lo: float = 0.01, hi: float = 0.99) -> pd.DataFrame:
    """对 DataFrame 中指定列逐列缩尾。"""
    out = df.copy()
    for c in cols:
        if c in out.columns:
            out[c] = winsorize_series(
                pd.to_numeric(out[c], errors="coerce"), lo=lo, hi=hi
            )
    return out


def clean_inf(df: pd.DataFrame, cols: List[str]) -> pd.DataFrame:
    """比例变量统一清理 inf。"""
    for c in cols:
        if c in df.columns:
            df[c] = df[c].replace([np.inf, -np.inf], np.nan)
    return df


# ═══════════════════════════════════════════════════════════════════
# 诊断输出
# ═══════════════════════════════════════════════════════════════════

def write_counts(path: Path, counts: Dict) -> Path:
    """写出某一步的计数诊断 JSON。"""
    path.write_text(json.dumps(counts, indent=2, ensure_ascii=False,
                               default=str),
                    encoding="utf-8")
    return path


def read_counts(path: Path) -> Dict:
    if not path.exists():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


# ═══════════════════════════════════════════════════════════════════
# 格式化
# ═══════════════════════════════════════════════════════════════════

def fmt_est(x) -> str:
    if x is None or pd.isna(x):
        return ""
    return f"{float(x):.3f}"


def fmt_int(x) -> str:
    if x is None or pd.isna(x):
        return ""
    return f"{int(round(float(x))):,}"


def latex_escape(s: str) -> str:
    return (
        str(s)
        .replace("\\", "\\textbackslash{}")
        .replace("&", "\\&")
        .replace("%", "\\%")
        .replace("$", "\\$")
        .replace("#", "\\#")
        .replace("_", "\\_")
        .replace("{", "\\{")
        .replace("}", "\\}")
        .replace("~", "\\textasciitilde{}")
        .replace("^", "\\textasciicircum{}")
    )
