#!/usr/bin/env python3
"""
p06_market_shocks.py — 第六步：市场变量 + 货币政策冲击对齐
==========================================================
  1) CRSP 月度（已挂 gvkey）: me = |PRC| × SHROUT / 1000（百万美元），
     按 datadate 所在月份匹配；同公司多只股票按月加总。
     CRSP 缺失时退回 PRCCQ × CSHOQ。
     tobin_q = (ATQ − CEQQ + me) / ATQ
  2) 货币政策冲击（公告时刻 + 冲击值）按事件时间对齐到季度窗口：
       mp_shock      = Σ shock, 公告时刻 ∈ [qend_t1, qend_t0)
       mp_shock_lag  = Σ shock, 公告时刻 ∈ [qend_t2, qend_t1)
       n_announce    = 当季公告次数
     季末时刻为季度最后一天的次日 00:00，因此季末当天下午的公告归入当季。

输入:
  data/processed/pipeline/s05_panel_innov.csv
  cfg.crsp_path, cfg.shocks_path
输出: data/processed/pipeline/s06_panel_shocks.csv
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
from fqpanel.utils import clean_inf, load_table, norm_gvkey, read_stage, write_counts


# ═══════════════════════════════════════════════════════════════════
# CRSP
# ═══════════════════════════════════════════════════════════════════

def load_crsp(path) -> pd.DataFrame:
    c = load_table(path, dtype={"gvkey": str})
    check_required_columns(c, ["gvkey", "date", "prc", "shrout"], "crsp")
    c["gvkey"] = c["gvkey"].apply(norm_gvkey).astype("string")
    c["date"] = pd.to_datetime(c["date"], errors="coerce")
    for col in ["prc", "shrout"]:
        c[col] = pd.to_numeric(c[col], errors="coerce")
    c = c.dropna(subset=["date"])
    # CRSP 负价格表示买卖价均值
    c["me"] = c["prc"].abs() * c["shrout"] / 1000.0
    c["ym"] = c["date"].dt.to_period("M")
    return (
        c.groupby(["gvkey", "ym"], as_index=False)["me"]
        .sum(min_count=1)
    )


def merge_market(panel: pd.DataFrame, crsp: pd.DataFrame) -> Tuple[pd.DataFrame, Dict]:
    counts: Dict = {}
    out = panel.drop(columns=[c for c in ["me", "me_src", "tobin_q"]
                              if c in panel.columns])
    out["ym"] = out["datadate"].dt.to_period("M")
    if crsp is not None and not crsp.empty:
        out = out.merge(crsp, on=["gvkey", "ym"], how="left")
    else:
        out["me"] = np.nan
    counts["me_from_crsp"] = int(out["me"].notna().sum())

    comp_me = out["prccq"] * out["cshoq"] if {"prccq", "cshoq"} <= set(out.columns) \
        else pd.Series(np.nan, index=out.index)
    out["me_src"] = np.where(out["me"].notna(), "crsp",
                             np.where(comp_me.notna(), "compustat", ""))
    out["me"] = out["me"].fillna(comp_me)
    out.loc[out["me"] <= 0, "me"] = np.nan
    counts["me_from_compustat"] = int((out["me_src"] == "compustat").sum())

    out["tobin_q"] = (out["atq"] - out["ceqq"] + out["me"]) / out["atq"]
    out = clean_inf(out, ["tobin_q"])
    return out.drop(columns=["ym"]), counts


# ═══════════════════════════════════════════════════════════════════
# 货币政策冲击
# ═══════════════════════════════════════════════════════════════════

def load_shocks(path, shock_col: str = "shock") -> pd.DataFrame:
    s = load_table(path)
    check_required_columns(s, ["date", shock_col], "shocks")
    s["date"] = pd.to_datetime(s["date"], errors="coerce")
    s["shock"] = pd.to_numeric(s[shock_col], errors="coerce")
    return s.dropna(subset=["date", "shock"])[["date", "shock"]].sort_values("date")


def window_sum(times: np.ndarray, cum: np.ndarray,
               start: pd.Series, end: pd.Series) -> np.ndarray:
    """Σ 值, 时刻 ∈ [start, end)；cum 为带前导 0 的累计和。"""
    i0 = np.searchsorted(times, start.to_numpy(dtype="datetime64[ns]"), side="left")
    i1 = np.searchsorted(times, end.to_numpy(dtype="datetime64[ns]"), side="left")
    res = cum[i1] - cum[i0]
    bad = start.isna().to_numpy() | end.isna().to_numpy()
    return np.where(bad, np.nan, res)


def align_shocks(panel: pd.DataFrame, shocks: pd.DataFrame) -> pd.DataFrame:
    """按季度窗口汇总冲击；没有冲击数据时三列均为缺失。"""
    out = panel.copy()
    if shocks is None or shocks.empty:
        for c in ["mp_shock", "mp_shock_lag", "n_announce"]:
            out[c] = np.nan
        return out
    s = shocks.sort_values("date")
    times = s["date"].to_numpy(dtype="datetime64[ns]")
    cum = np.concatenate([[0.0], np.cumsum(s["shock"].to_numpy(dtype=float))])
    ones = np.arange(len(s) + 1, dtype=float)

    out["mp_shock"] = window_sum(times, cum, out["qend_t1"], out["qend_t0"])
    out["mp_shock_lag"] = window_sum(times, cum, out["qend_t2"], out["qend_t1"])
    out["n_announce"] = window_sum(times, ones, out["qend_t1"], out["qend_t0"])

    # 冲击序列覆盖区间之外的季度记为缺失，而不是 0
    lo, hi = s["date"].min(), s["date"].max()
    outside = (out["qend_t0"] <= lo) | (out["qend_t1"] > hi)
    out.loc[outside, ["mp_shock", "n_announce"]] = np.nan
    outside_lag = (out["qend_t1"] <= lo) | (out["qend_t2"] > hi)
    out.loc[outside_lag, "mp_shock_lag"] = np.nan
    return out


def run(cfg: PipelineConfig) -> Path:
    ensure_dirs(cfg)
    pipe = Path(cfg.pipeline_dir)
    counts = {}

    print("[p06] 读取 s05 ...")
    panel = read_stage(pipe / "s05_panel_innov.csv",
                       ["datadate", "qend_t0", "qend_t1", "qend_t2"])

    # ── 6.1 市场变量 ────────────────────────────────────────────
    if Path(cfg.crsp_path).exists():
        print("[p06] 读取 CRSP 月度 ...")
        crsp = load_crsp(cfg.crsp_path)
    else:
        print(f"[p06] CRSP 文件不存在，市值改用 PRCCQ × CSHOQ: {cfg.crsp_path}")
        crsp = None
    panel, c_mkt = merge_market(panel, crsp)
    counts.update(c_mkt)

    # ── 6.2 冲击对齐 ────────────────────────────────────────────
    if Path(cfg.shocks_path).exists():
        print("[p06] 读取货币政策冲击 ...")
        shocks = load_shocks(cfg.shocks_path)
        counts["shock_announcements"] = len(shocks)
    else:
        print(f"[p06] 冲击文件不存在，冲击变量记为缺失: {cfg.shocks_path}")
        shocks = None
    out = align_shocks(panel, shocks)
    counts["mp_shock_nonmissing"] = int(out["mp_shock"].notna().sum())
    counts["output_rows"] = len(out)

    out_path = pipe / "s06_panel_shocks.csv"
    out.to_csv(out_path, index=False)
    write_counts(pipe / "s06_counts.json", counts)
    print(f"[p06] 完成 → {out_path}  ({len(out)} rows)")
    return out_path


if __name__ == "__main__":
    cfg = PipelineConfig.from_cli()
    run(cfg)
