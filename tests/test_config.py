from pathlib import Path

from fqpanel.config import PipelineConfig, ensure_dirs


def test_save_and_load(tmp_path):
    cfg = PipelineConfig(year_start=1995, strict_duplicates=True,
                         interpolate_cols=["atq"])
    path = tmp_path / "cfg" / "run_config.json"
    cfg.save(path)
    assert PipelineConfig.load(path) == cfg


def test_from_cli_overrides_defaults():
    cfg = PipelineConfig.from_cli([
        "--year-start", "2000",
        "--run-gap-tolerance", "5",
        "--strict-duplicates",
        "--keep-utility",
        "--shocks", "x.csv",
    ])
    assert cfg.year_start == 2000
    assert cfg.run_gap_tolerance == 5
    assert cfg.strict_duplicates
    assert not cfg.exclude_utility
    assert cfg.shocks_path == "x.csv"
    assert cfg.fill_missing_rd
    assert cfg.year_end == PipelineConfig.year_end


def test_from_cli_defaults():
    assert PipelineConfig.from_cli([]) == PipelineConfig()


def test_ensure_dirs(cfg):
    ensure_dirs(cfg)
    for d in [cfg.output_dir, cfg.processed_dir, cfg.pipeline_dir]:
        assert Path(d).is_dir()
