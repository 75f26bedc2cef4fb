import numpy as np
import pandas as pd
import pytest

from fqpanel.config import PipelineConfig
from fqpanel.p07_build_sample import apply_censoring


GOOD = {
    "gvkey": "001000", "fyearq": 2005, "sic": 3571.0, "atq": 100.0,
    "saleq": 30.0, "lev": 0.25, "liq": 0.10, "inv": 0.05, "cf": 0.04,
    "sales_g": 0.10, "size": 4.6, "rd": 0.02, "mp_shock": 0.01,
}


def _sample(changes):
    return pd.DataFrame([{**GOOD, **c} for c in changes])


def test_attrition_order_and_counts():
    df = _sample([
        {},
        {"fyearq": 1985},
        {"sic": 6020.0},
        {"atq": 0.0},
        {"lev": 1.5},
        {"sales_g": 2.0},
        {"inv": np.nan},
    ])
    sample, attrition = apply_censoring(df, PipelineConfig())

    assert [a["step"] for a in attrition] == [
        "start",
        "fyearq_outside_window",
        "financial_or_utility",
        "nonpositive_assets",
        "negative_sales",
        "lev_liq_outside_unit",
        "abs_sales_growth_gt_max",
        "missing_analysis_vars",
    ]
    assert [a["deleted"] for a in attrition] == [0, 1, 1, 1, 0, 1, 1, 1]
    assert [a["remaining"] for a in attrition] == [7, 6, 5, 4, 4, 3, 2, 1]
    assert len(sample) == 1


def test_utility_switch():
    df = _sample([{}, {"sic": 4911.0}])
    kept, _ = apply_censoring(df, PipelineConfig(exclude_utility=False))
    dropped, _ = apply_censoring(df, PipelineConfig())
    assert len(kept) == 2
    assert len(dropped) == 1


def test_shock_required_only_when_available():
    df = _sample([{"mp_shock": np.nan}, {"mp_shock": np.nan}])
    sample, _ = apply_censoring(df, PipelineConfig())
    assert len(sample) == 2

    df = _sample([{}, {"mp_shock": np.nan}])
    sample, _ = apply_censoring(df, PipelineConfig())
    assert len(sample) == 1


def test_winsorization_clips_tails():
    df = _sample([{"cf": v} for v in np.linspace(0.0, 0.5, 101)])
    sample, _ = apply_censoring(df, PipelineConfig())
    assert sample["cf"].min() == pytest.approx(0.005)
    assert sample["cf"].max() == pytest.approx(0.495)
