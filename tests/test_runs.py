import pandas as pd
import pytest

from fqpanel.checks import DataIntegrityError, check_runs
from fqpanel.runs import run_summary, segment_runs


def _panel(rows):
    df = pd.DataFrame(rows, columns=["gvkey", "datadate"])
    df["gvkey"] = df["gvkey"].astype("string")
    df["datadate"] = pd.to_datetime(df["datadate"])
    return df


def test_regular_quarters_form_one_run():
    df = _panel([("001000", d) for d in
                 ["2005-03-31", "2005-06-30", "2005-09-30", "2005-12-31"]])
    out = segment_runs(df)
    assert list(out["run_id"]) == [1, 1, 1, 1]
    assert list(out["run_pos"]) == [0, 1, 2, 3]
    assert (out["run_len"] == 4).all()


def test_nine_month_gap_starts_new_run():
    df = _panel([("001000", d) for d in
                 ["2005-03-31", "2005-06-30", "2006-03-31"]])
    out = segment_runs(df)
    assert list(out["run_id"]) == [1, 1, 2]
    assert list(out["run_pos"]) == [0, 1, 0]
    assert list(out["run_len"]) == [2, 2, 1]


def test_gap_tolerance_boundary():
    # 2005-07 季度预期 91 天：97 天（差 6）延续，99 天（差 8）断开
    inside = segment_runs(_panel([("001000", "2005-03-31"),
                                  ("001000", "2005-07-06")]))
    assert list(inside["run_id"]) == [1, 1]

    outside = segment_runs(_panel([("001000", "2005-03-31"),
                                   ("001000", "2005-07-08")]))
    assert list(outside["run_id"]) == [1, 2]

    wide = segment_runs(_panel([("001000", "2005-03-31"),
                                ("001000", "2005-07-08")]), tolerance=8)
    assert list(wide["run_id"]) == [1, 1]


def test_run_ids_restart_per_firm_and_output_is_sorted():
    df = _panel([
        ("002000", "2005-06-30"),
        ("001000", "2006-03-31"),
        ("001000", "2005-03-31"),
        ("002000", "2005-03-31"),
    ])
    out = segment_runs(df)
    assert list(out["gvkey"]) == ["001000", "001000", "002000", "002000"]
    assert list(out["run_id"]) == [1, 2, 1, 1]
    check_runs(out)


def test_tied_dates_raise():
    df = _panel([("001000", "2005-03-31"), ("001000", "2005-03-31")])
    with pytest.raises(DataIntegrityError):
        segment_runs(df)


def test_empty_frame():
    out = segment_runs(_panel([]))
    assert out.empty
    assert {"run_id", "run_pos", "run_len"} <= set(out.columns)


def test_check_runs_rejects_gaps_in_numbering():
    df = _panel([("001000", "2005-03-31"), ("001000", "2006-03-31")])
    out = segment_runs(df)
    out.loc[1, "run_id"] = 3
    with pytest.raises(DataIntegrityError):
        check_runs(out)


def test_check_runs_rejects_discontinuous_run():
    df = _panel([("001000", "2005-03-31"), ("001000", "2006-03-31")])
    out = segment_runs(df)
    out["run_id"] = 1
    with pytest.raises(DataIntegrityError):
        check_runs(out)


def test_run_summary():
    df = _panel([("001000", d) for d in
                 ["2005-03-31", "2005-06-30", "2006-03-31"]]
                + [("002000", "2005-03-31")])
    s = run_summary(segment_runs(df))
    assert s["firms"] == 2
    assert s["runs"] == 3
    assert s["firms_multi_run"] == 1
    assert s["run_len_max"] == 2
    assert s["single_quarter_runs"] == 2
