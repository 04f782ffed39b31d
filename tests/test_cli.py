"""Tests for the command line interface."""

import json

import pytest

from converge.adapters.base import PermanentProviderError
from converge.adapters.fake_aws import FakeAWSProvider
from converge.cli import build_parser, main
from converge.storage import StateStore


@pytest.fixture
def workdir(tmp_path, monkeypatch, network_yaml):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CONVERGE_CONFIG", raising=False)
    monkeypatch.setenv("CONVERGE_SIMULATE_LATENCY", "false")
    (tmp_path / "network.yaml").write_text(network_yaml, encoding="utf-8")
    return tmp_path


def run(*argv):
    return main(["--state-dir", "state", *argv])


def test_parse_var_types():
    args = build_parser().parse_args(
        ["plan", "x.yaml", "-var", "subnet_count=3", "--var", "environment=prod"]
    )
    assert dict(args.vars) == {"subnet_count": 3, "environment": "prod"}
    assert args.refresh is True


def test_plan_apply_destroy_cycle(workdir, capsys):
    assert run("plan", "network.yaml", "--detailed-exitcode") == 2
    assert "Plan: 4 to add, 0 to change, 0 to destroy." in capsys.readouterr().out

    assert run("apply", "network.yaml") == 0
    out = capsys.readouterr().out
    assert "Apply complete! Resources: 4 added, 0 changed, 0 destroyed." in out
    assert "vpc_id = " in out

    # Provider resources survive between invocations next to the state
    assert (workdir / "state" / "default.provider.json").exists()
    assert run("plan", "network.yaml", "--detailed-exitcode") == 0
    assert "No changes." in capsys.readouterr().out

    assert run("state", "list") == 0
    assert set(capsys.readouterr().out.split()) == {
        "aws_vpc.main",
        "aws_subnet.public[0]",
        "aws_subnet.public[1]",
        "aws_security_group.web",
    }

    assert run("output", "vpc_id") == 0
    assert capsys.readouterr().out.strip().startswith("vpc-")

    assert run("destroy", "network.yaml") == 0
    assert "0 added, 0 changed, 4 destroyed" in capsys.readouterr().out
    assert run("output", "--json") == 0
    assert json.loads(capsys.readouterr().out) == {}


def test_state_show_and_taint(workdir, capsys):
    assert run("apply", "network.yaml", "-var", "subnet_count=1") == 0
    capsys.readouterr()

    assert run("state", "show", "aws_vpc.main") == 0
    record = json.loads(capsys.readouterr().out)
    assert record["attributes"]["cidr_block"] == "10.0.0.0/16"

    assert run("taint", "aws_vpc.main") == 0
    assert "aws_vpc.main is now tainted" in capsys.readouterr().out
    assert run("plan", "network.yaml", "-var", "subnet_count=1", "--detailed-exitcode") == 2
    assert "-/+ aws_vpc.main  (resource is tainted)" in capsys.readouterr().out

    assert run("untaint", "aws_vpc.main") == 0
    assert run("taint", "aws_vpc.missing") == 1
    assert run("state", "show", "aws_vpc.missing") == 1


def test_errors_exit_nonzero(workdir, capsys):
    (workdir / "bad.yaml").write_text("module: {}\n", encoding="utf-8")
    assert run("plan", "bad.yaml") == 1
    err = capsys.readouterr().err
    assert "Configuration validation failed" in err
    assert "Unknown top-level section" in err

    assert run("plan", "missing.yaml") == 1
    assert run("output", "nope") == 1


def test_locked_state_and_force_unlock(workdir, capsys):
    store = StateStore(str(workdir / "state"))
    token = store.acquire("apply", who="ci@runner")

    assert run("apply", "network.yaml") == 1
    assert "State is locked by ci@runner" in capsys.readouterr().err

    assert run("force-unlock", "wrong-id") == 1
    assert run("force-unlock", token.id) == 0
    assert store.current_lock() is None


def test_validate_checks_without_state(workdir, capsys):
    assert run("validate", "network.yaml", "-var", "subnet_count=3") == 0
    assert "valid: 5 resources, 2 outputs." in capsys.readouterr().out
    assert not (workdir / "state").exists()

    (workdir / "cycle.yaml").write_text(
        "resource:\n"
        "  aws_vpc:\n"
        "    a: {cidr_block: \"${aws_vpc.b.id}\"}\n"
        "    b: {cidr_block: \"${aws_vpc.a.id}\"}\n",
        encoding="utf-8",
    )
    assert run("validate", "cycle.yaml") == 1
    assert "aws_vpc.a" in capsys.readouterr().err


def test_provider_failure_exits_nonzero(workdir, capsys, monkeypatch):
    assert run("apply", "network.yaml") == 0
    capsys.readouterr()

    def denied(self, resource_type, resource_id):
        raise PermanentProviderError("Not authorized", code="AccessDenied")

    monkeypatch.setattr(FakeAWSProvider, "read", denied)
    assert run("plan", "network.yaml") == 1
    assert "Error: provider call failed: AccessDenied: Not authorized" in capsys.readouterr().err
