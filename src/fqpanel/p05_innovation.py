#!/usr/bin/env python3
"""
p05_innovation.py — 第五步：专利变量合并
=========================================
数据来源:
  - PatentsView 专利（已通过外部名称匹配挂上 gvkey）: patent_id, gvkey, filing_date
  - Kogan, Papanikolaou, Seru & Stoffman (2017) 专利价值: patent_id, xi_real

归属规则:
  专利按申请日归入同公司季度窗口 [qend_t1, qend_t0)，
  即 (上一季度最后一天, 本季度最后一天]。
  落在 run 断档或首条记录之前的专利不归入任何季度（计数写入诊断）。

变量:
  npat     = 当季申请专利件数
  kpss_xi  = 当季专利 KPSS 价值之和（百万美元，实际值）
  ln_npat  = ln(1 + npat)
  ln_kpss  = ln(1 + kpss_xi)

输入:
  data/processed/pipeline/s04_fundq_vars.csv
  cfg.patents_path, cfg.kpss_path
输出: data/processed/pipeline/s05_panel_innov.csv
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Tuple

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from fqpanel.checks import check_required_columns
from fqpanel.config import PipelineConfig, ensure_dirs
from fqpanel.utils import load_table, norm_gvkey, read_stage, write_counts


INNOV_COLS = ["npat", "kpss_xi", "ln_npat", "ln_kpss"]


def norm_patent_id(v) -> str:
    """专利号标准化：去空白与前导零（设计专利等字母前缀保留）。"""
    if pd.isna(v):
        return ""
    s = str(v).strip().upper().split(".")[0]
    return s.lstrip("0")


def load_patents(path) -> pd.DataFrame:
    pat = load_table(path, dtype=str)
    check_required_columns(pat, ["patent_id", "gvkey", "filing_date"], "patents")
    pat["patent_id"] = pat["patent_id"].apply(norm_patent_id)
    pat["gvkey"] = pat["gvkey"].apply(norm_gvkey).astype("string")
    pat["filing_date"] = pd.to_datetime(pat["filing_date"], errors="coerce")
    pat = pat.dropna(subset=["filing_date"])
    pat = pat[(pat["gvkey"] != "") & (pat["patent_id"] != "")]
    return pat.drop_duplicates(["patent_id", "gvkey"])


def load_kpss(path) -> pd.DataFrame:
    k = load_table(path)
    if "patnum" in k.columns and "patent_id" not in k.columns:
        k = k.rename(columns={"patnum": "patent_id"})
    check_required_columns(k, ["patent_id", "xi_real"], "kpss")
    k["patent_id"] = k["patent_id"].apply(norm_patent_id)
    k["xi_real"] = pd.to_numeric(k["xi_real"], errors="coerce")
    return k[["patent_id", "xi_real"]].drop_duplicates("patent_id")


def assign_patents_to_quarters(
    panel: pd.DataFrame, patents: pd.DataFrame,
) -> Tuple[pd.DataFrame, int]:
    """
    为每件专利找同公司 qend_t0 严格晚于申请日的最近季度，
    且申请日 >= qend_t1。返回 (patent → gvkey/datadate 表, 未归入件数)。
    """
    if patents.empty or panel.empty:
        return patents.assign(datadate=pd.NaT).iloc[0:0], len(patents)

    codes, _ = pd.factorize(
        pd.concat([panel["gvkey"], patents["gvkey"]], ignore_index=True)
    )
    left = patents.assign(_fid=codes[len(panel):]).sort_values("filing_date")
    right = (
        panel[["gvkey", "datadate", "qend_t0", "qend_t1"]]
        .assign(_fid=codes[:len(panel)])
        .drop(columns="gvkey")
        .sort_values("qend_t0")
    )
    m = pd.merge_asof(
        left, right,
        left_on="filing_date", right_on="qend_t0",
        by="_fid", direction="forward",
        allow_exact_matches=False,
    )
    inside = m["datadate"].notna() & (m["filing_date"] >= m["qend_t1"])
    dropped = int((~inside).sum())
    return m.loc[inside].drop(columns=["_fid"]), dropped


def build_innovation_vars(
    panel: pd.DataFrame, patents: pd.DataFrame, kpss: pd.DataFrame,
    fill_zero: bool = True,
) -> Tuple[pd.DataFrame, Dict]:
    counts: Dict = {"patents_input": len(patents)}
    assigned, dropped = assign_patents_to_quarters(panel, patents)
    counts["patents_assigned"] = len(assigned)
    counts["patents_outside_windows"] = dropped

    assigned = assigned.merge(kpss, on="patent_id", how="left")
    counts["patents_with_kpss"] = int(assigned["xi_real"].notna().sum())

    if assigned.empty:
        agg = pd.DataFrame({
            "gvkey": pd.Series(dtype="string"),
            "datadate": pd.Series(dtype="datetime64[ns]"),
            "npat": pd.Series(dtype=float),
            "kpss_xi": pd.Series(dtype=float),
        })
    else:
        agg = (
            assigned.groupby(["gvkey", "datadate"], as_index=False)
            .agg(npat=("patent_id", "nunique"),
                 kpss_xi=("xi_real", lambda s: s.sum(min_count=1)))
        )
    out = panel.drop(columns=[c for c in INNOV_COLS if c in panel.columns])
    out = out.merge(agg, on=["gvkey", "datadate"], how="left")
    if fill_zero:
        out["npat"] = out["npat"].fillna(0)
        out["kpss_xi"] = out["kpss_xi"].fillna(0)
    out["ln_npat"] = np.log1p(out["npat"])
    out["ln_kpss"] = np.log1p(out["kpss_xi"].clip(lower=0))
    counts["firm_quarters_with_patents"] = int((out["npat"] > 0).sum())
    return out, counts


def run(cfg: PipelineConfig) -> Path:
    ensure_dirs(cfg)
    pipe = Path(cfg.pipeline_dir)

    print("[p05] 读取 s04 ...")
    panel = read_stage(pipe / "s04_fundq_vars.csv",
                       ["datadate", "qend_t0", "qend_t1", "qend_t2"])

    if Path(cfg.patents_path).exists():
        print("[p05] 读取 PatentsView 专利 ...")
        patents = load_patents(cfg.patents_path)
    else:
        print(f"[p05] 专利文件不存在，专利变量全部记为 0: {cfg.patents_path}")
        patents = pd.DataFrame(columns=["patent_id", "gvkey", "filing_date"])
        patents["filing_date"] = pd.to_datetime(patents["filing_date"])
    if Path(cfg.kpss_path).exists():
        kpss = load_kpss(cfg.kpss_path)
    else:
        print(f"[p05] KPSS 文件不存在，跳过专利价值: {cfg.kpss_path}")
        kpss = pd.DataFrame({"patent_id": pd.Series(dtype=object),
                             "xi_real": pd.Series(dtype=float)})

    print("[p05] 专利归入 firm-quarter ...")
    out, counts = build_innovation_vars(
        panel, patents, kpss, fill_zero=cfg.fill_patents_zero
    )
    counts["output_rows"] = len(out)

    out_path = pipe / "s05_panel_innov.csv"
    out.to_csv(out_path, index=False)
    write_counts(pipe / "s05_counts.json", counts)
    print(f"[p05] 归入 {counts['patents_assigned']} 件, "
          f"窗口外 {counts['patents_outside_windows']} 件")
    print(f"[p05] 完成 → {out_path}  ({len(out)} rows)")
    return out_path


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
