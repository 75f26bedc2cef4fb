import sys
from pathlib import Path

import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from fqpanel.config import PipelineConfig  # noqa: E402
from fqpanel.fiscal_calendar import calendar_quarter_label  # noqa: E402


BASE_FIELDS = {
    "atq": 100.0, "ltq": 50.0, "saleq": 30.0, "ppentq": 40.0,
    "dlttq": 20.0, "dlcq": 5.0, "cheq": 10.0, "actq": 30.0,
    "lctq": 15.0, "ibq": 3.0, "dpq": 1.0, "xrdq": 2.0, "oiadpq": 4.0,
    "ceqq": 50.0, "cshoq": 10.0, "prccq": 5.0, "sic": 3571.0,
}


def fundq_row(gvkey, datadate, **kw):
    """一条 fundq 记录；fyearq/fqtr/datacqtr 默认按日历季度推出。"""
    ts = pd.Timestamp(datadate)
    label = calendar_quarter_label(ts)
    row = {
        "gvkey": gvkey,
        "datadate": ts,
        "fyearq": int(label[:4]),
        "fqtr": int(label[5]),
        "datacqtr": label[:-1],
    }
    row.update(BASE_FIELDS)
    row.update(kw)
    return row


@pytest.fixture
def make_fundq():
    def _make(rows):
        df = pd.DataFrame(rows)
        df["gvkey"] = df["gvkey"].astype("string")
        df["datadate"] = pd.to_datetime(df["datadate"])
        return df
    return _make


@pytest.fixture
def row():
    return fundq_row


@pytest.fixture
def cfg(tmp_path):
    return PipelineConfig(
        output_dir=str(tmp_path / "outputs"),
        processed_dir=str(tmp_path / "processed"),
        pipeline_dir=str(tmp_path / "processed" / "pipeline"),
        comp_fundq_path=str(tmp_path / "raw" / "fundq.csv"),
        dup_override_path=str(tmp_path / "raw" / "overrides.csv"),
        patents_path=str(tmp_path / "raw" / "patents.tsv"),
        kpss_path=str(tmp_path / "raw" / "kpss.csv"),
        crsp_path=str(tmp_path / "raw" / "crsp.csv"),
        shocks_path=str(tmp_path / "raw" / "shocks.csv"),
    )
