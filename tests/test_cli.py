import json

import pytest

from conftest import make_config
from tenantdb.cli import EXIT_CONFIG_ERROR, EXIT_OK, EXIT_UNHEALTHY, build_parser, is_healthy, main


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "tenants.yaml"
    make_config(tmp_path).to_yaml(str(path))
    return path


def test_parser_collects_repeated_tenants():
    args = build_parser().parse_args(["--config", "x.yaml", "--tenant", "1", "--tenant", "acme"])

    assert args.config == "x.yaml"
    assert args.tenants == ["1", "acme"]


def test_healthy_tenants(config_path, capsys):
    exit_code = main(["--config", str(config_path)])

    report = json.loads(capsys.readouterr().out)
    assert exit_code == EXIT_OK
    assert set(report) == {"A", "B"}
    assert report["A"]["status"] == "healthy"


def test_selected_tenants_only(config_path, capsys):
    exit_code = main(["--config", str(config_path), "--tenant", "B"])

    report = json.loads(capsys.readouterr().out)
    assert exit_code == EXIT_OK
    assert list(report) == ["B"]


def test_unknown_tenant_is_unhealthy(config_path, capsys):
    exit_code = main(["--config", str(config_path), "--tenant", "A", "--tenant", "Z"])

    report = json.loads(capsys.readouterr().out)
    assert exit_code == EXIT_UNHEALTHY
    assert report["Z"]["status"] == "unknown tenant"


def test_missing_config_file(tmp_path, capsys):
    exit_code = main(["--config", str(tmp_path / "missing.yaml")])

    assert exit_code == EXIT_CONFIG_ERROR
    assert "Configuration error" in capsys.readouterr().err


def test_invalid_config_file(tmp_path, capsys):
    path = tmp_path / "tenants.yaml"
    path.write_text("tenants: {}\n")

    exit_code = main(["--config", str(path)])

    assert exit_code == EXIT_CONFIG_ERROR


def test_config_path_from_environment(config_path, monkeypatch, capsys):
    monkeypatch.setenv("TENANTDB_CONFIG_PATH", str(config_path))

    assert main([]) == EXIT_OK


def test_is_healthy():
    assert is_healthy({"1": {"status": "healthy"}}) is True
    assert is_healthy({"1": {"status": "healthy"}, "2": {"status": "unhealthy: refused"}}) is False
