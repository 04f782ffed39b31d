"""Shared fixtures for the converge test suite."""

from pathlib import Path

import pytest

from converge.adapters.fake_aws import FakeAWSProvider
from converge.config import EngineSettings, ProviderSettings, RetrySettings
from converge.engine.engine import ConvergeEngine
from converge.storage import StateStore

CONFIGS_DIR = Path(__file__).resolve().parent.parent / "configs"


NETWORK_YAML = """
variable:
  subnet_count:
    default: 2
  environment:
    default: dev

resource:
  aws_vpc:
    main:
      cidr_block: 10.0.0.0/16
      tags:
        Name: "main-${var.environment}"

  aws_subnet:
    public:
      count: "${var.subnet_count}"
      vpc_id: "${aws_vpc.main.id}"
      cidr_block: "10.0.${count.index}.0/24"

  aws_security_group:
    web:
      name: web
      description: Web tier
      vpc_id: "${aws_vpc.main.id}"

output:
  vpc_id:
    value: "${aws_vpc.main.id}"
  subnet_ids:
    value: "${aws_subnet.public[*].id}"
"""


def chain_yaml(length: int) -> str:
    """Linear chain lt_0 <- lt_1 <- ... each depending on the previous one."""
    lines = ["resource:", "  aws_launch_template:"]
    for i in range(length):
        lines.append(f"    lt_{i}:")
        lines.append(f"      name: template-{i}")
        if i > 0:
            lines.append(f"      depends_on: [aws_launch_template.lt_{i - 1}]")
    return "\n".join(lines) + "\n"


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        state_dir=str(tmp_path / "state"),
        artifacts_dir=str(tmp_path / "artifacts"),
        parallelism=4,
        retry=RetrySettings(max_attempts=3, base_delay=0.0, max_delay=0.0),
        provider=ProviderSettings(simulate_latency=False),
    )


@pytest.fixture
def provider():
    fake = FakeAWSProvider("us-west-2", simulate_latency=False, seed=42)
    fake.connect()
    return fake


@pytest.fixture
def store(settings):
    return StateStore(settings.state_dir, settings.workspace)


@pytest.fixture
def engine(settings, store, provider):
    return ConvergeEngine(settings, store=store, provider=provider)


@pytest.fixture
def network_yaml():
    return NETWORK_YAML


@pytest.fixture
def eks_yaml():
    return (CONFIGS_DIR / "eks_cluster.yaml").read_text(encoding="utf-8")


@pytest.fixture
def make_chain():
    return chain_yaml
