#!/usr/bin/env python3
"""
fiscal_calendar.py — 季度日历对齐
==================================
把每条 (gvkey, datadate) 记录放到时间轴上：

  qend_t0   当期季末时刻 = datadate 次日 00:00
  qend_t1   上一季度季末时刻
  qend_t2   上两季度季末时刻

上一季度的判定：同公司严格早于锚点日期的最近一条记录，
距离在 [89, 92] 天之内才算“真实”上一季度；否则按固定季度长度表
倒推一个合成季末（lag_unavailable = True）。2-back 以 1-back 的
日期为锚点递归同一规则。

季度长度表与日历季度标签表均为固定查表，不能用“减 3 个月”之类的
通用日历运算代替：两者在 2–4 月的日期边界上结果不同。
"""
from __future__ import annotations

import numpy as np
import pandas as pd


ONE_DAY = pd.Timedelta(days=1)

# ═══════════════════════════════════════════════════════════════════
# 固定查表
# ═══════════════════════════════════════════════════════════════════

# 季末月份 → (平年长度, 闰年长度)；4 月单独按日期切分
QUARTER_LENGTH = {
    1: (92, 92),
    2: (92, 92),
    3: (90, 91),
    5: (91, 91),
    6: (92, 92),
    7: (91, 91),
    8: (92, 92),
    9: (92, 92),
    10: (92, 92),
    11: (92, 92),
    12: (91, 91),
}

# 4 月：闰年 → (日期上限, 不超过上限时的长度, 超过上限时的长度)
APRIL_LENGTH = {
    False: (28, 89, 90),
    True: (29, 90, 91),
}

# 季末月份 → (标签年份偏移, 标签后缀)
#  1 月季末归入上一年的 Q4c
CAL_LABEL = {
    1: (-1, "Q4c"),
    2: (0, "Q1a"),
    3: (0, "Q1b"),
    4: (0, "Q1c"),
    5: (0, "Q2a"),
    6: (0, "Q2b"),
    7: (0, "Q2c"),
    8: (0, "Q3a"),
    9: (0, "Q3b"),
    10: (0, "Q3c"),
    11: (0, "Q4a"),
    12: (0, "Q4b"),
}


def is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def quarter_length(date) -> int:
    """单个季末日期对应的预期季度长度（天）。"""
    ts = pd.Timestamp(date)
    leap = is_leap_year(ts.year)
    if ts.month == 4:
        cutoff, short, long_ = APRIL_LENGTH[leap]
        return short if ts.day <= cutoff else long_
    return QUARTER_LENGTH[ts.month][1 if leap else 0]


def expected_quarter_length(dates: pd.Series) -> pd.Series:
    """向量化版 quarter_length；NaT 返回 <NA>。"""
    d = pd.to_datetime(pd.Series(dates))
    month = d.dt.month
    day = d.dt.day
    leap = d.dt.is_leap_year.fillna(False).astype(bool)

    plain = month.map({m: v[0] for m, v in QUARTER_LENGTH.items()})
    leapv = month.map({m: v[1] for m, v in QUARTER_LENGTH.items()})
    out = plain.where(~leap, leapv)

    apr = month == 4
    for is_leap, (cutoff, short, long_) in APRIL_LENGTH.items():
        m = apr & (leap == is_leap)
        out = out.where(~m, np.where(day <= cutoff, short, long_))
    return out.astype("Int64")


# ═══════════════════════════════════════════════════════════════════
# 日历季度标签
# ═══════════════════════════════════════════════════════════════════

def calendar_quarter_label(date) -> str:
    """季末日期 → 日历季度标签，如 1999-01-31 → '1998Q4c'。"""
    ts = pd.Timestamp(date)
    offset, suffix = CAL_LABEL[ts.month]
    return f"{ts.year + offset}{suffix}"


def add_calendar_labels(df: pd.DataFrame, date_col: str = "datadate",
                        reported_col: str = "datacqtr") -> pd.DataFrame:
    """
    添加 cal_label / cal_quarter / in_cal_quarter 三列。
    in_cal_quarter = 报告的 datacqtr 与按 datadate 推出的日历季度一致。
    """
    out = df.copy()
    d = pd.to_datetime(out[date_col])
    month = d.dt.month
    offset = month.map({m: v[0] for m, v in CAL_LABEL.items()})
    suffix = month.map({m: v[1] for m, v in CAL_LABEL.items()})
    year = (d.dt.year + offset).astype("Int64").astype("string")
    out["cal_label"] = year + suffix.astype("string")
    out["cal_quarter"] = out["cal_label"].str[:-1]
    if reported_col in out.columns:
        reported = out[reported_col].astype("string").str.strip().str.upper()
        out["in_cal_quarter"] = (reported == out["cal_quarter"]).fillna(False).astype(bool)
    else:
        out["in_cal_quarter"] = False
    return out


# ═══════════════════════════════════════════════════════════════════
# 季末时刻
# ═══════════════════════════════════════════════════════════════════

def quarter_end_instant(dates: pd.Series) -> pd.Series:
    """datadate 是季度最后一天 → 季末时刻取次日 00:00。"""
    return pd.to_datetime(dates) + ONE_DAY


def _prior_date(firm_codes: np.ndarray, anchors: pd.Series,
                dates: pd.Series) -> pd.Series:
    """对每个锚点找同公司严格早于锚点的最近一条记录日期（无则 NaT）。"""
    n = len(anchors)
    left = pd.DataFrame({
        "_fid": firm_codes,
        "_anchor": pd.to_datetime(anchors).to_numpy(),
        "_row": np.arange(n),
    }).sort_values("_anchor", kind="mergesort")
    right = pd.DataFrame({
        "_fid": firm_codes,
        "_prior": pd.to_datetime(dates).to_numpy(),
    }).sort_values("_prior", kind="mergesort")
    m = pd.merge_asof(
        left, right,
        left_on="_anchor", right_on="_prior",
        by="_fid", direction="backward",
        allow_exact_matches=False,
    )
    m = m.sort_values("_row")
    return pd.Series(m["_prior"].to_numpy(), index=anchors.index)


def align_quarter_endpoints(df: pd.DataFrame,
                            firm_col: str = "gvkey",
                            date_col: str = "datadate",
                            lag_lo: int = 89,
                            lag_hi: int = 92) -> pd.DataFrame:
    """
    计算 qend_t0 / qend_t1 / qend_t2 与 lag_unavailable / lag2_unavailable。

    输入须已按 (firm, date) 唯一；输出行序与输入一致。
    纯函数：结果只取决于 datadate 以及同公司是否存在真实的上一季度记录。
    """
    out = df.copy()
    if out.empty:
        for c in ["qend_t0", "qend_t1", "qend_t2"]:
            out[c] = pd.Series(dtype="datetime64[ns]")
        for c in ["qlen", "gap_days"]:
            out[c] = pd.Series(dtype="Int64")
        out["lag_unavailable"] = pd.Series(dtype=bool)
        out["lag2_unavailable"] = pd.Series(dtype=bool)
        return out

    d = pd.to_datetime(out[date_col])
    fid = pd.factorize(out[firm_col])[0]

    out["qend_t0"] = quarter_end_instant(d)
    out["qlen"] = expected_quarter_length(d)

    # ── 1-back ───────────────────────────────────────────────────
    prev1 = _prior_date(fid, d, d)
    gap1 = (d - prev1).dt.days
    genuine1 = gap1.between(lag_lo, lag_hi).fillna(False).astype(bool)
    synth1 = out["qend_t0"] - pd.to_timedelta(out["qlen"].astype(float), unit="D")
    out["qend_t1"] = (prev1 + ONE_DAY).where(genuine1, synth1)
    out["gap_days"] = gap1.astype("Int64")
    out["lag_unavailable"] = ~genuine1

    # ── 2-back：以 1-back 的季度最后一天为锚点 ──────────────────
    anchor1 = out["qend_t1"] - ONE_DAY
    prev2 = _prior_date(fid, anchor1, d)
    gap2 = (anchor1 - prev2).dt.days
    genuine2 = gap2.between(lag_lo, lag_hi).fillna(False).astype(bool)
    qlen1 = expected_quarter_length(anchor1)
    synth2 = out["qend_t1"] - pd.to_timedelta(qlen1.astype(float), unit="D")
    out["qend_t2"] = (prev2 + ONE_DAY).where(genuine2, synth2)
    out["lag2_unavailable"] = ~genuine2
    return out
