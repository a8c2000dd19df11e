"""
Tests for config loading, job records and the remote log handler.
"""

import logging
import threading
from unittest.mock import MagicMock

import pytest
import yaml

from league_sync.models import Credentials, Job, jobs_from_config
from league_sync.utils import RemoteLogHandler, apply_defaults, artifact_path, load_config, scaled_timeout


def write_config(tmp_path, data) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


JOBS = [
    {"id": "home", "name": "Home League", "url": "https://fantasy.nfl.com/league/1"},
    {"id": "work", "url": "https://fantasy.nfl.com/league/2", "priority": 0,
     "credentials": {"username": "me@example.com", "password": "secret"}},
]


class TestLoadConfig:

    def test_defaults_are_applied(self, tmp_path):
        config = load_config(write_config(tmp_path, {"jobs": JOBS}))
        assert config["driver"] == "playwright"
        assert config["retry_attempts"] == 3
        assert config["operation_timeout_ms"] == 30_000
        assert config["backoff_base_ms"] == 1000
        assert config["optimistic_auth"] is True
        assert config["stuck_rules"] == []
        assert config["status_server_url"] is None

    def test_explicit_values_win(self, tmp_path):
        config = load_config(write_config(tmp_path, {"jobs": JOBS, "retry_attempts": 5, "driver": "none"}))
        assert config["retry_attempts"] == 5
        assert config["driver"] == "none"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    @pytest.mark.parametrize("data, message", [
        ({}, "jobs"),
        ({"jobs": []}, "non-empty"),
        ({"jobs": [{"id": "a"}]}, "url"),
        ({"jobs": [JOBS[0], JOBS[0]]}, "Duplicate job id"),
        ({"jobs": [{**JOBS[0], "priority": "high"}]}, "priority"),
        ({"jobs": [{**JOBS[0], "credentials": {"password": "x"}}]}, "username"),
        ({"jobs": JOBS, "driver": "selenium"}, "Invalid driver"),
        ({"jobs": JOBS, "retry_attempts": 0}, "retry_attempts"),
        ({"jobs": JOBS, "backoff_base_ms": -1}, "backoff_base_ms"),
        ({"jobs": JOBS, "stuck_rules": [{"pattern": "(", "reason": "bad"}]}, "invalid pattern"),
        ({"jobs": JOBS, "stuck_rules": [{"pattern": "x"}]}, "reason"),
    ])
    def test_invalid_config(self, tmp_path, data, message):
        with pytest.raises(ValueError, match=message):
            load_config(write_config(tmp_path, data))

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_config(str(path))


class TestJobs:

    def test_jobs_from_config(self):
        home, work = jobs_from_config({"jobs": JOBS})
        assert home == Job(id="home", display_name="Home League",
                           source_locator="https://fantasy.nfl.com/league/1", priority=1)
        assert work.display_name == "work"
        assert work.priority == 0
        assert work.credentials == Credentials("me@example.com", "secret")

    def test_password_hidden_from_repr(self):
        assert "secret" not in repr(Credentials("me@example.com", "secret"))


def test_scaled_timeout_rounds_up():
    assert scaled_timeout(30_000, {}) == 30_000
    assert scaled_timeout(30_000, {"timeout_multiplier": 1.5}) == 45_000
    assert scaled_timeout(1_001, {}) == 1_100


def test_apply_defaults_mutates_and_returns():
    config = {"jobs": JOBS}
    assert apply_defaults(config) is config
    assert config["job_pacing_delay"] == 2.0


def test_artifact_path_is_filesystem_safe(tmp_path):
    path = artifact_path(str(tmp_path / "shots"), "error-home/league 1", "png")
    assert path.startswith(str(tmp_path / "shots"))
    assert path.endswith("_error-home_league_1.png")
    assert (tmp_path / "shots").is_dir()


class TestRemoteLogHandler:

    def record(self, message):
        return logging.LogRecord("league_sync", logging.INFO, __file__, 1, message, None, None)

    def test_flush_sends_batch(self):
        client = MagicMock()
        handler = RemoteLogHandler(client, flush_interval=3600, flush_threshold=50)
        handler.emit(self.record("one"))
        handler.emit(self.record("two"))
        handler.flush()

        (entries,), _ = client.send_logs.call_args
        assert [e["message"] for e in entries] == ["one", "two"]
        assert entries[0]["level"] == "INFO"
        assert entries[0]["logger"] == "league_sync"

    def test_close_sends_remaining_entries(self):
        client = MagicMock()
        handler = RemoteLogHandler(client, flush_interval=3600, flush_threshold=50)
        handler.emit(self.record("last words"))
        handler.close()
        assert client.send_logs.call_args.args[0][0]["message"] == "last words"

    def test_threshold_wakes_the_shipper_thread(self):
        sent = threading.Event()
        senders = []

        def send_logs(batch):
            senders.append(threading.current_thread().name)
            sent.set()

        client = MagicMock()
        client.send_logs.side_effect = send_logs
        handler = RemoteLogHandler(client, flush_interval=3600, flush_threshold=2)
        handler.emit(self.record("one"))
        assert not sent.wait(0.2)
        handler.emit(self.record("two"))

        assert sent.wait(5)
        assert senders == ["log-shipper"]
        handler.close()

    def test_failed_flush_requeues(self):
        client = MagicMock()
        client.send_logs.side_effect = [ConnectionError("offline"), None]
        handler = RemoteLogHandler(client, flush_interval=3600, flush_threshold=50)
        handler.emit(self.record("kept"))

        handler.flush()
        handler.flush()

        assert client.send_logs.call_count == 2
        assert client.send_logs.call_args.args[0][0]["message"] == "kept"
