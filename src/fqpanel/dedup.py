#!/usr/bin/env python3
"""
dedup.py — (gvkey, datadate) 重复记录处理
==========================================
Compustat fundq 中同一 (gvkey, datadate) 可能有两条记录（通常是公司
变更会计年度后，同一季度在新旧两个 fyearq/fqtr 下各出现一次）。

处理规则（按顺序）：
  1) 同键 > 2 条：数据完整性错误，整键剔除（strict 模式直接报错）
  2) 两条记录在 dedup_fields 上只差“一边缺失”：半相同 → 逐字段取非缺失值合并
  3) 真正冲突：保留 datacqtr 与 datadate 推出的日历季度一致的那条
  4) 两条都一致或都不一致：查人工覆盖表 (gvkey, datadate, 冲突字段签名)
  5) 仍无法判定：整键剔除，交给人工处理
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple

import pandas as pd

from fqpanel.checks import DuplicateKeyError, KEY, check_unique_key
from fqpanel.fiscal_calendar import add_calendar_labels
from fqpanel.utils import norm_gvkey


OVERRIDE_COLS = ["gvkey", "datadate", "signature", "keep_fyearq", "keep_fqtr"]


# ═══════════════════════════════════════════════════════════════════
# 人工覆盖表
# ═══════════════════════════════════════════════════════════════════

def load_overrides(path) -> pd.DataFrame:
    """
    读取人工覆盖表（csv）。
    列: gvkey, datadate, signature, keep_fyearq, keep_fqtr[, note]
    signature 为冲突字段名按字母序以 '|' 连接；留空表示匹配任意冲突。
    文件不存在时返回空表。
    """
    path = Path(path)
    if not path.exists():
        print(f"[dedup] 覆盖表不存在，跳过: {path}")
        return pd.DataFrame(columns=OVERRIDE_COLS)
    ov = pd.read_csv(path, dtype=str, comment="#")
    ov.columns = [c.strip().lower() for c in ov.columns]
    missing = [c for c in OVERRIDE_COLS if c not in ov.columns]
    if missing:
        raise ValueError(f"覆盖表缺少字段: {missing}")
    ov["gvkey"] = ov["gvkey"].apply(norm_gvkey).astype("string")
    ov["datadate"] = pd.to_datetime(ov["datadate"], errors="coerce").astype("datetime64[ns]")
    ov["signature"] = ov["signature"].fillna("").str.strip().astype("string")
    ov["keep_fyearq"] = pd.to_numeric(ov["keep_fyearq"], errors="coerce")
    ov["keep_fqtr"] = pd.to_numeric(ov["keep_fqtr"], errors="coerce")
    invalid = ov[["datadate", "keep_fyearq", "keep_fqtr"]].isna().any(axis=1) \
        | (ov["gvkey"] == "").astype(bool)
    if invalid.any():
        print(f"[dedup] !! 覆盖表 {int(invalid.sum())} 条无法解析（gvkey/日期/"
              f"keep 字段），已忽略，数据行: {(ov.index[invalid] + 1).tolist()[:10]}")
    ov = ov.loc[~invalid].copy()
    ov.attrs["invalid_entries"] = int(invalid.sum())
    return ov


# ═══════════════════════════════════════════════════════════════════
# 冲突判定
# ═══════════════════════════════════════════════════════════════════

def conflict_signatures(pairs: pd.DataFrame, fields: List[str]) -> pd.Series:
    """
    每个成对键的冲突字段签名：两条均非缺失且取值不同的字段。
    半相同的键签名为空字符串。
    """
    if pairs.empty:
        return pd.Series(dtype="string")
    nuniq = pairs.groupby(KEY)[fields].nunique(dropna=True)
    conflict = nuniq > 1
    sig = conflict.apply(
        lambda r: "|".join(sorted(c for c in fields if r[c])), axis=1
    )
    return sig.astype("string")


def _merge_semi_identical(pairs: pd.DataFrame) -> pd.DataFrame:
    """逐字段取非缺失值；日历季度一致的记录排在前面，优先提供非数值字段。"""
    s = pairs.sort_values(KEY + ["in_cal_quarter", "fyearq"],
                          ascending=[True, True, False, True])
    return s.groupby(KEY, as_index=False, sort=False).first()


def _apply_overrides(cand: pd.DataFrame, sig: pd.Series,
                     overrides: pd.DataFrame) -> Tuple[pd.DataFrame, Dict]:
    """
    按覆盖表挑出被保留的记录；未命中的键不返回。
    同时返回诊断：有覆盖条目但一条记录都没选中的键（unmatched），
    以及选中两条记录的键（ambiguous）。
    """
    diag = {"override_keys_unmatched": [], "override_keys_ambiguous": []}
    if cand.empty or overrides.empty:
        return cand.iloc[0:0].copy(), diag
    c = cand.merge(sig.rename("signature").reset_index(), on=KEY, how="left")
    ov = overrides[OVERRIDE_COLS]
    exact = c.merge(ov, on=["gvkey", "datadate", "signature"], how="inner")
    wild = c.merge(
        ov[ov["signature"] == ""].drop(columns="signature"),
        on=["gvkey", "datadate"], how="inner",
    )
    hit = pd.concat([p for p in [exact, wild] if len(p)] or [exact],
                    ignore_index=True)
    listed = hit[KEY].drop_duplicates()
    hit = hit[(hit["fyearq"] == hit["keep_fyearq"]) &
              (hit["fqtr"] == hit["keep_fqtr"])]
    hit = hit.drop_duplicates(KEY + ["fyearq", "fqtr"])
    # 覆盖表必须唯一指向一条记录
    n = hit.groupby(KEY)["fyearq"].transform("size")
    ambiguous = hit.loc[n > 1, KEY].drop_duplicates()
    hit = hit[n == 1]

    picked_idx = hit.set_index(KEY).index
    amb_idx = ambiguous.set_index(KEY).index
    listed_idx = listed.set_index(KEY).index
    unmatched = listed[~listed_idx.isin(picked_idx) & ~listed_idx.isin(amb_idx)]
    diag["override_keys_unmatched"] = unmatched.to_dict("records")
    diag["override_keys_ambiguous"] = ambiguous.to_dict("records")
    return hit.drop(columns=["signature", "keep_fyearq", "keep_fqtr"]), diag


# ═══════════════════════════════════════════════════════════════════
# 主函数
# ═══════════════════════════════════════════════════════════════════

def resolve_duplicates(
    df: pd.DataFrame,
    fields: List[str],
    overrides: pd.DataFrame = None,
    strict: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame, Dict]:
    """
    返回 (唯一键表, 剔除记录, 计数)。
    非重复键原样通过；输出按 (gvkey, datadate) 排序。
    """
    if overrides is None:
        overrides = pd.DataFrame(columns=OVERRIDE_COLS)
    counts: Dict = {}
    orig_cols = list(df.columns)
    fields = [f for f in fields if f in df.columns]

    d = add_calendar_labels(df)
    if "dup_resolution" not in d.columns:
        d["dup_resolution"] = ""
        orig_cols.append("dup_resolution")
    d["_n"] = d.groupby(KEY)["gvkey"].transform("size")

    counts["input_rows"] = len(d)
    counts["keys_single"] = int((d["_n"] == 1).sum())
    counts["keys_pair"] = int((d["_n"] == 2).sum() // 2)

    rejects = []

    # ── 1) 超过 2 条 ─────────────────────────────────────────────
    over = d[d["_n"] > 2]
    counts["keys_over_multiplicity"] = int(over.groupby(KEY).ngroups) if len(over) else 0
    if len(over):
        sample = over[KEY].drop_duplicates().head(5).to_dict("records")
        if strict:
            raise DuplicateKeyError(
                f"{counts['keys_over_multiplicity']} 个键出现 >2 条记录，例: {sample}"
            )
        print(f"[dedup] !! {counts['keys_over_multiplicity']} 个键出现 >2 条记录，"
              f"整键剔除，例: {sample}")
        rejects.append(over.assign(reject_reason="over_multiplicity"))

    single = d[d["_n"] == 1]
    pairs = d[d["_n"] == 2]

    # ── 2) 半相同 ───────────────────────────────────────────────
    sig = conflict_signatures(pairs, fields)
    semi_keys = sig[sig == ""].index
    conf_keys = sig[sig != ""].index
    pair_idx = pairs.set_index(KEY).index

    semi = pairs[pair_idx.isin(semi_keys)]
    merged = _merge_semi_identical(semi)
    merged["dup_resolution"] = "semi_identical"
    counts["keys_semi_identical"] = len(merged)

    # ── 3) 日历季度判定 ─────────────────────────────────────────
    conf = pairs[pair_idx.isin(conf_keys)]
    n_aligned = conf.groupby(KEY)["in_cal_quarter"].transform("sum")
    by_cal = conf[(n_aligned == 1) & conf["in_cal_quarter"]].copy()
    by_cal["dup_resolution"] = "calendar_quarter"
    counts["keys_calendar_quarter"] = len(by_cal)

    # ── 4) 人工覆盖 ─────────────────────────────────────────────
    undecided = conf[n_aligned != 1]
    by_ov, ov_diag = _apply_overrides(undecided, sig, overrides)
    by_ov["dup_resolution"] = "override"
    counts["keys_override"] = len(by_ov)
    for k, keys in ov_diag.items():
        counts[k] = len(keys)
        if keys:
            print(f"[dedup] !! 覆盖表 {k}: {len(keys)} 个键，例: {keys[:5]}")

    # ── 5) 无法判定 ─────────────────────────────────────────────
    und_idx = undecided.set_index(KEY).index
    ov_idx = by_ov.set_index(KEY).index
    irreconcilable = undecided[~und_idx.isin(ov_idx)]
    counts["keys_irreconcilable"] = int(irreconcilable.groupby(KEY).ngroups) \
        if len(irreconcilable) else 0
    if len(irreconcilable):
        print(f"[dedup] !! {counts['keys_irreconcilable']} 个冲突键无法判定，"
              f"需补充覆盖表: "
              f"{irreconcilable[KEY].drop_duplicates().head(5).to_dict('records')}")
        irr = irreconcilable.merge(
            sig.rename("signature").reset_index(), on=KEY, how="left"
        )
        rejects.append(irr.assign(reject_reason="irreconcilable_pair"))

    parts = [p for p in [single, merged, by_cal, by_ov] if len(p)]
    out = pd.concat(parts, ignore_index=True) if parts else d.iloc[0:0]
    out = out[orig_cols].sort_values(KEY).reset_index(drop=True)
    check_unique_key(out, KEY, stage="dedup")
    counts["output_rows"] = len(out)

    if rejects:
        rej = pd.concat(rejects, ignore_index=True)
        rej = rej.drop(columns=["_n"], errors="ignore")
    else:
        rej = pd.DataFrame(columns=orig_cols + ["reject_reason"])
    counts["rejected_rows"] = len(rej)
    return out, rej, counts
