import numpy as np
import pandas as pd
import pytest

from fqpanel.checks import DuplicateKeyError
from fqpanel.config import DEDUP_FIELDS, PipelineConfig
from fqpanel.dedup import conflict_signatures, load_overrides, resolve_duplicates
from fqpanel.p03_calendar_runs import build_calendar_runs


OVERRIDE_HEADER = "gvkey,datadate,signature,keep_fyearq,keep_fqtr,note\n"


def _conflicting_pair(row):
    """两条记录的日历季度都与 datadate 不一致，atq/saleq 冲突。"""
    return [
        row("001000", "2005-06-30", fyearq=2005, fqtr=3, datacqtr="2005Q3"),
        row("001000", "2005-06-30", fyearq=2006, fqtr=1, datacqtr="2005Q4",
            atq=120.0, saleq=35.0),
    ]


def test_semi_identical_pair_is_merged(make_fundq, row):
    df = make_fundq([
        row("001000", "2005-06-30", atq=100.0),
        row("001000", "2005-06-30", atq=np.nan),
    ])
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS)
    assert len(out) == 1
    assert out.loc[0, "atq"] == 100.0
    assert out.loc[0, "dup_resolution"] == "semi_identical"
    assert rej.empty
    assert counts["keys_semi_identical"] == 1


def test_semi_identical_fills_each_field_from_either_record(make_fundq, row):
    df = make_fundq([
        row("001000", "2005-06-30", atq=100.0, saleq=np.nan),
        row("001000", "2005-06-30", atq=np.nan, saleq=30.0),
    ])
    out, _, _ = resolve_duplicates(df, DEDUP_FIELDS)
    assert out.loc[0, "atq"] == 100.0
    assert out.loc[0, "saleq"] == 30.0


def test_conflict_resolved_by_calendar_quarter(make_fundq, row):
    df = make_fundq([
        row("001000", "2005-06-30", fyearq=2005, fqtr=3, datacqtr="2005Q3",
            atq=120.0),
        row("001000", "2005-06-30", atq=100.0),
    ])
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS)
    assert len(out) == 1
    assert out.loc[0, "atq"] == 100.0
    assert out.loc[0, "datacqtr"] == "2005Q2"
    assert out.loc[0, "dup_resolution"] == "calendar_quarter"
    assert counts["keys_calendar_quarter"] == 1


def test_conflict_signature(make_fundq, row):
    df = make_fundq(_conflicting_pair(row))
    sig = conflict_signatures(df, DEDUP_FIELDS)
    assert list(sig) == ["atq|saleq"]


def test_override_table_decides_conflict(make_fundq, row, tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text(
        "# 人工判定\n" + OVERRIDE_HEADER
        + "1000,2005-06-30,atq|saleq,2006,1,新会计年度\n",
        encoding="utf-8",
    )
    overrides = load_overrides(path)
    assert len(overrides) == 1

    df = make_fundq(_conflicting_pair(row))
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS, overrides)
    assert len(out) == 1
    assert out.loc[0, "atq"] == 120.0
    assert out.loc[0, "fyearq"] == 2006
    assert out.loc[0, "dup_resolution"] == "override"
    assert counts["keys_override"] == 1
    assert rej.empty


def test_override_with_other_signature_does_not_apply(make_fundq, row, tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text(OVERRIDE_HEADER + "001000,2005-06-30,atq,2006,1,\n",
                    encoding="utf-8")
    df = make_fundq(_conflicting_pair(row))
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS, load_overrides(path))
    assert out.empty
    assert counts["keys_irreconcilable"] == 1


def test_blank_signature_matches_any_conflict(make_fundq, row, tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text(OVERRIDE_HEADER + "001000,2005-06-30,,2005,3,\n",
                    encoding="utf-8")
    df = make_fundq(_conflicting_pair(row))
    out, _, counts = resolve_duplicates(df, DEDUP_FIELDS, load_overrides(path))
    assert len(out) == 1
    assert out.loc[0, "atq"] == 100.0
    assert counts["keys_override"] == 1


def test_missing_override_file_is_empty(tmp_path):
    ov = load_overrides(tmp_path / "nope.csv")
    assert ov.empty


def test_irreconcilable_pair_is_rejected(make_fundq, row):
    df = make_fundq(_conflicting_pair(row) + [row("001000", "2005-09-30")])
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS)
    assert list(out["datadate"]) == [pd.Timestamp("2005-09-30")]
    assert len(rej) == 2
    assert set(rej["reject_reason"]) == {"irreconcilable_pair"}
    assert set(rej["signature"]) == {"atq|saleq"}
    assert counts["keys_irreconcilable"] == 1
    assert counts["rejected_rows"] == 2


def test_more_than_two_records_rejected(make_fundq, row):
    df = make_fundq([row("001000", "2005-06-30", atq=float(a))
                     for a in (100, 110, 120)]
                    + [row("002000", "2005-06-30")])
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS)
    assert list(out["gvkey"]) == ["002000"]
    assert len(rej) == 3
    assert set(rej["reject_reason"]) == {"over_multiplicity"}
    assert counts["keys_over_multiplicity"] == 1


def test_more_than_two_records_strict_raises(make_fundq, row):
    df = make_fundq([row("001000", "2005-06-30") for _ in range(3)])
    with pytest.raises(DuplicateKeyError):
        resolve_duplicates(df, DEDUP_FIELDS, strict=True)


def test_unique_records_pass_through(make_fundq, row):
    df = make_fundq([row("001000", "2005-06-30"), row("001000", "2005-03-31"),
                     row("002000", "2005-06-30")])
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS)
    assert len(out) == 3
    assert rej.empty
    assert (out["dup_resolution"] == "").all()
    assert counts["keys_single"] == 3
    assert list(out.columns) == list(df.columns) + ["dup_resolution"]


def test_resolve_then_align_is_idempotent(make_fundq, row):
    cfg = PipelineConfig()
    df = make_fundq([
        row("001000", "2005-03-31"),
        row("001000", "2005-06-30", atq=100.0),
        row("001000", "2005-06-30", atq=np.nan),
        row("001000", "2005-09-30"),
        row("001000", "2006-06-30"),
        row("002000", "2005-06-30", fyearq=2005, fqtr=3, datacqtr="2005Q3",
            atq=120.0),
        row("002000", "2005-06-30"),
    ])
    first, _, _ = resolve_duplicates(df, DEDUP_FIELDS)
    first = build_calendar_runs(first, cfg)

    again, _, counts = resolve_duplicates(first, DEDUP_FIELDS)
    assert counts["keys_pair"] == 0
    second = build_calendar_runs(again, cfg)

    for c in ["gvkey", "datadate", "run_id", "qend_t0", "qend_t1", "qend_t2",
              "lag_unavailable", "lag2_unavailable", "dup_resolution"]:
        assert first[c].tolist() == second[c].tolist(), c


# ── 两条都与日历季度一致 ────────────────────────────────────────

def _aligned_pair(row):
    """两条记录的 datacqtr 都等于 datadate 的日历季度，atq/saleq 冲突。"""
    return [
        row("001000", "2005-06-30", fyearq=2005, fqtr=2, datacqtr="2005Q2"),
        row("001000", "2005-06-30", fyearq=2006, fqtr=1, datacqtr="2005Q2",
            atq=120.0, saleq=35.0),
    ]


def test_both_aligned_pair_without_override_is_rejected(make_fundq, row):
    df = make_fundq(_aligned_pair(row))
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS)
    assert out.empty
    assert counts["keys_calendar_quarter"] == 0
    assert counts["keys_irreconcilable"] == 1
    assert set(rej["reject_reason"]) == {"irreconcilable_pair"}
    assert len(rej) == 2


def test_both_aligned_pair_resolved_by_override(make_fundq, row, tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text(OVERRIDE_HEADER + "001000,2005-06-30,atq|saleq,2006,1,\n",
                    encoding="utf-8")
    df = make_fundq(_aligned_pair(row))
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS, load_overrides(path))
    assert len(out) == 1
    assert out.loc[0, "atq"] == 120.0
    assert out.loc[0, "fyearq"] == 2006
    assert out.loc[0, "dup_resolution"] == "override"
    assert counts["keys_calendar_quarter"] == 0
    assert counts["keys_override"] == 1
    assert rej.empty


# ── 覆盖表诊断 ──────────────────────────────────────────────────

def test_unparseable_override_entries_are_counted(tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text(
        OVERRIDE_HEADER
        + "001000,2005-06-30,atq|saleq,2006,1,\n"
        + "001000,not-a-date,atq,2006,1,\n"
        + "002000,2005-06-30,atq,next,1,\n"
        + ",2005-06-30,atq,2006,1,\n",
        encoding="utf-8",
    )
    ov = load_overrides(path)
    assert len(ov) == 1
    assert ov.attrs["invalid_entries"] == 3
    assert ov.iloc[0]["gvkey"] == "001000"


def test_override_matching_no_record_is_counted(make_fundq, row, tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text(OVERRIDE_HEADER + "001000,2005-06-30,atq|saleq,2007,4,\n",
                    encoding="utf-8")
    df = make_fundq(_conflicting_pair(row))
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS, load_overrides(path))
    assert out.empty
    assert counts["override_keys_unmatched"] == 1
    assert counts["override_keys_ambiguous"] == 0
    assert counts["keys_irreconcilable"] == 1


def test_override_matching_both_records_is_counted(make_fundq, row, tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text(
        OVERRIDE_HEADER
        + "001000,2005-06-30,atq|saleq,2006,1,\n"
        + "001000,2005-06-30,,2005,3,\n",
        encoding="utf-8",
    )
    df = make_fundq(_conflicting_pair(row))
    out, rej, counts = resolve_duplicates(df, DEDUP_FIELDS, load_overrides(path))
    assert out.empty
    assert counts["keys_override"] == 0
    assert counts["override_keys_ambiguous"] == 1
    assert counts["override_keys_unmatched"] == 0
    assert set(rej["reject_reason"]) == {"irreconcilable_pair"}


def test_override_diagnostics_zero_without_table(make_fundq, row):
    df = make_fundq(_conflicting_pair(row))
    _, _, counts = resolve_duplicates(df, DEDUP_FIELDS)
    assert counts["override_keys_unmatched"] == 0
    assert counts["override_keys_ambiguous"] == 0
