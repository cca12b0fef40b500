import json
import os

import pytest

from devrecon import cli


@pytest.fixture(autouse=True)
def store_mode_env(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("DEVRECON_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DEVRECON_STORE_URL", f"sqlite:///{tmp_path / 'devrecon.db'}")
    monkeypatch.setenv("DEVRECON_SOURCE_MODE", "store")


def test_run_writes_artefacts(tmp_path):
    out_dir = tmp_path / "out"

    exit_code = cli.main(["--log-level", "WARNING", "run", "--out-dir", str(out_dir)])

    assert exit_code == 0
    assert json.loads((out_dir / "recon_result.json").read_text())["status"] == "success"
    assert (out_dir / "recon_report.md").read_text().startswith("# Device Inventory Reconciliation Report")


def test_status_prints_metadata_after_run(tmp_path, capsys):
    cli.main(["run", "--out-dir", str(tmp_path / "out")])
    capsys.readouterr()

    assert cli.main(["status"]) == 0

    metadata = json.loads(capsys.readouterr().out)
    assert metadata["id"] == "sync_metadata"
    assert metadata["lastSyncStatus"] == "success"
    assert metadata["lastTrigger"] == "cli"


def test_invalid_configuration_exits_with_usage_error(monkeypatch):
    monkeypatch.setenv("DEVRECON_BATCH_SIZE", "many")

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["status"])

    assert excinfo.value.code == 2
