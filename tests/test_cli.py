from __future__ import annotations

from pathlib import Path

import pytest

from pg_partialcopy import cli
from pg_partialcopy.errors import StreamError

CONFIG = '''
[source]
database_url = "dbname=src"
[destination]
database_url = "dbname=dst"
[[steps]]
table_name = "a"
'''


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "copy.toml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch):
    monkeypatch.setattr(cli, "load_dotenv", lambda: False)


def test_init_requires_source(tmp_path: Path):
    with pytest.raises(SystemExit) as ei:
        cli.main(["--init", str(tmp_path / "new.toml")])
    assert ei.value.code == 2


def test_init_refuses_existing_file(config_file: Path):
    assert cli.main(["--init", "--source", "dbname=src", str(config_file)]) == 1
    assert config_file.read_text(encoding="utf-8") == CONFIG


def test_missing_config_file(tmp_path: Path):
    assert cli.main([str(tmp_path / "missing.toml")]) == 1


def test_successful_run(monkeypatch, config_file: Path):
    ran = []

    def fake_run(self):
        ran.append(self.config.steps[0].table_name)
        return {"steps": []}

    monkeypatch.setattr(cli.PartialCopyEngine, "run", fake_run)
    assert cli.main([str(config_file)]) == 0
    assert ran == ["a"]


def test_failed_run_alerts_when_webhook_configured(monkeypatch, config_file: Path):
    def failing_run(self):
        raise StreamError("error copying rows (destination side): boom", side="destination",
                          cause=RuntimeError("boom"), phase="step", step_index=0, table_name="a")

    alerts_sent = []
    monkeypatch.setattr(cli.PartialCopyEngine, "run", failing_run)
    monkeypatch.setattr(cli, "send_discord_alert", lambda message: alerts_sent.append(message))
    monkeypatch.setenv(cli.WEBHOOK_ENV, "https://discord.test/hook")

    assert cli.main([str(config_file)]) == 1
    assert len(alerts_sent) == 1
    assert "error executing step 0 (a)" in alerts_sent[0]


def test_failed_run_without_webhook_does_not_alert(monkeypatch, config_file: Path):
    def failing_run(self):
        raise StreamError("boom", side="source", cause=RuntimeError("boom"))

    alerts_sent = []
    monkeypatch.setattr(cli.PartialCopyEngine, "run", failing_run)
    monkeypatch.setattr(cli, "send_discord_alert", lambda message: alerts_sent.append(message))
    monkeypatch.delenv(cli.WEBHOOK_ENV, raising=False)

    assert cli.main([str(config_file)]) == 1
    assert alerts_sent == []
