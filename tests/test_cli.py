"""
Tests for the command-line entry point.
"""

import logging

import pytest
import yaml

import main
from league_sync.models import jobs_from_config

from tests.conftest import make_config


@pytest.mark.asyncio
async def test_run_without_driver_exits_zero():
    config = make_config(driver="none")
    jobs = jobs_from_config(config)
    exit_code = await main.run(logging.getLogger("league_sync"), config, jobs, retry_failed=True)
    assert exit_code == 0


def test_config_error_exits_one(tmp_path, monkeypatch):
    monkeypatch.setattr("sys.argv", ["main.py", "--config", str(tmp_path / "missing.yaml")])
    monkeypatch.setattr(main, "setup_logging", lambda: logging.getLogger("league_sync"))
    with pytest.raises(SystemExit) as exc_info:
        main.main()
    assert exc_info.value.code == 1


def test_unknown_job_id_is_a_usage_error(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"jobs": [{"id": "home", "url": "https://fantasy.nfl.com/league/1"}]}))
    monkeypatch.setattr("sys.argv", ["main.py", "-c", str(path), "--job", "away"])
    monkeypatch.setattr(main, "setup_logging", lambda: logging.getLogger("league_sync"))
    with pytest.raises(SystemExit) as exc_info:
        main.main()
    assert exc_info.value.code == 2
