"""Unit tests for triskell_bridge.cli — argument handling and config commands."""

import pytest

from triskell_bridge.cli import main

ENV_KEYS = [
    "BRIDGE_ENV", "LOG_LEVEL", "MAIL_CONFIG", "MAIL_ADDRESSES", "PORT", "TRISKELL_URL",
    "TENANT_ID", "TRISKELL_ACCOUNTS", "ONLY_PROJECT", "TEST_JOBS", "WEBHOOK_TOKEN",
]

CONFIG = """\
triskell:
  url: http://triskell.test/rest
  tenant: 3
  accounts:
    api: {user: bridge, user_id: '7', md5: 5f4dcc3b5aa765d61d8327deb882cf99}
webhooks:
  token: s3cret
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    return str(path)


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_unknown_mode_rejected(self, config_file):
        with pytest.raises(SystemExit):
            main(["check-config", "--config", config_file, "--env", "staging"])


class TestCheckConfig:
    def test_valid(self, config_file, capsys):
        assert main(["check-config", "--config", config_file]) == 0
        out = capsys.readouterr().out
        assert "[OK] mode=development tenant=3 account=api (bridge)" in out
        assert "s3cret" not in out
        assert "5f4dcc3b" not in out

    def test_env_flag(self, config_file, capsys):
        assert main(["check-config", "--config", config_file, "--env", "production"]) == 0
        assert "mode=production" in capsys.readouterr().out

    def test_env_variables(self, config_file, capsys, monkeypatch):
        monkeypatch.setenv("TENANT_ID", "12")
        assert main(["check-config", "--config", config_file]) == 0
        assert "tenant=12" in capsys.readouterr().out

    def test_missing_file(self, tmp_path, capsys):
        assert main(["check-config", "--config", str(tmp_path / "nope.yaml")]) == 2
        assert "[ERROR]" in capsys.readouterr().out

    def test_missing_api_account(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("port: 3000\n", encoding="utf-8")
        assert main(["check-config", "--config", str(path)]) == 2
        assert "not configured" in capsys.readouterr().out

    def test_bad_env_value(self, config_file, capsys, monkeypatch):
        monkeypatch.setenv("PORT", "eighty")
        assert main(["check-config", "--config", config_file]) == 2


class TestJobs:
    def test_development_markers(self, config_file, capsys, monkeypatch):
        monkeypatch.setenv("TEST_JOBS", "projects_sync")
        assert main(["jobs", "--config", config_file]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert any(l.startswith("projects_sync") and "[test job]" in l for l in lines)
        assert any(l.startswith("log_cleanup") and "[not started]" in l for l in lines)

    def test_backup_markers(self, config_file, capsys, monkeypatch):
        monkeypatch.setenv("BRIDGE_ENV", "backup")
        assert main(["jobs", "--config", config_file]) == 0
        out = capsys.readouterr().out
        assert out.count("[disabled]") == 3

    def test_production_schedules(self, config_file, capsys, monkeypatch):
        monkeypatch.setenv("BRIDGE_ENV", "production")
        assert main(["jobs", "--config", config_file]) == 0
        out = capsys.readouterr().out
        assert "session_keepalive    */15 * * * *" in out
        assert "[" not in out


class TestRun:
    def test_config_error_exit_code(self, tmp_path, capsys):
        assert main(["run", "--config", str(tmp_path / "missing.yaml")]) == 2

    def test_runs_service(self, config_file, monkeypatch):
        seen = []

        def fake_run_service(config):
            seen.append(config)
            return 0

        monkeypatch.setattr("triskell_bridge.bootstrap.run_service", fake_run_service)
        assert main(["run", "--config", config_file, "--env", "backup"]) == 0
        assert seen[0].mode.value == "backup"
