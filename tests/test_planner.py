"""Tests for plan creation and rendering."""

import pytest

from converge.engine.expressions import KNOWN_AFTER_APPLY
from converge.engine.graph import GraphBuilder
from converge.engine.parser import ConfigParser
from converge.engine.planner import ExecutionPlanner, PlanError, render_plan
from converge.models import LifecycleState, PlanAction, StateRecord, StateSnapshot


VPC_YAML = """
resource:
  aws_vpc:
    main:
      cidr_block: {cidr}
      tags: {{Name: {name}}}
  aws_subnet:
    a:
      vpc_id: "${{aws_vpc.main.id}}"
      cidr_block: 10.0.1.0/24
"""


def vpc_yaml(cidr="10.0.0.0/16", name="main"):
    return VPC_YAML.format(cidr=cidr, name=name)


def applied_state(**vpc_overrides):
    """State matching vpc_yaml() with its defaults."""
    vpc = StateRecord(
        address="aws_vpc.main",
        resource_type="aws_vpc",
        name="main",
        provider_id="vpc-0123456789abcdef0",
        attributes={"cidr_block": "10.0.0.0/16", "tags": {"Name": "main"}},
        computed={"arn": "arn:aws:ec2:us-west-2:123456789012:vpc/vpc-0123456789abcdef0"},
    )
    for key, value in vpc_overrides.items():
        setattr(vpc, key, value)
    subnet = StateRecord(
        address="aws_subnet.a",
        resource_type="aws_subnet",
        name="a",
        provider_id="subnet-0123456789abcdef0",
        attributes={"vpc_id": "vpc-0123456789abcdef0", "cidr_block": "10.0.1.0/24"},
        dependencies=["aws_vpc.main"],
    )
    return StateSnapshot(resources={"aws_vpc.main": vpc, "aws_subnet.a": subnet})


@pytest.fixture
def planner(provider):
    return ExecutionPlanner(provider)


def make_plan(planner, yaml_content, state, destroy=False):
    config = ConfigParser().parse(yaml_content)
    graph = GraphBuilder().build(config)
    return planner.create_plan("run_test", config, graph, state, destroy=destroy)


def test_fresh_state_creates_everything(planner, network_yaml):
    plan = make_plan(planner, network_yaml, StateSnapshot())

    assert [e.address for e in plan.entries] == [
        "aws_vpc.main",
        "aws_subnet.public[0]",
        "aws_subnet.public[1]",
        "aws_security_group.web",
    ]
    assert all(e.action == PlanAction.CREATE for e in plan.entries)
    assert (plan.to_add, plan.to_change, plan.to_destroy) == (4, 0, 0)

    subnet = plan.get_entry("aws_subnet.public[1]")
    assert subnet.after["vpc_id"] == KNOWN_AFTER_APPLY
    assert subnet.after["cidr_block"] == "10.0.1.0/24"
    assert subnet.dependencies == ["aws_vpc.main"]
    assert plan.get_entry("aws_vpc.main").after["tags"] == {"Name": "main-dev"}


def test_matching_state_is_no_op(planner):
    plan = make_plan(planner, vpc_yaml(), applied_state())

    assert [e.action for e in plan.entries] == [PlanAction.NO_OP, PlanAction.NO_OP]
    assert not plan.has_changes
    assert render_plan(plan) == "No changes. Infrastructure matches the configuration."


def test_mutable_change_is_update(planner):
    plan = make_plan(planner, vpc_yaml(name="renamed"), applied_state())

    vpc = plan.get_entry("aws_vpc.main")
    assert vpc.action == PlanAction.UPDATE
    assert vpc.changed_attributes == ["tags"]
    assert vpc.provider_id == "vpc-0123456789abcdef0"
    # Updated in place: the id stays known, so the subnet is unchanged
    assert plan.get_entry("aws_subnet.a").action == PlanAction.NO_OP


def test_immutable_change_forces_replacement_downstream(planner):
    plan = make_plan(planner, vpc_yaml(cidr="10.9.0.0/16"), applied_state())

    vpc = plan.get_entry("aws_vpc.main")
    assert vpc.action == PlanAction.REPLACE
    assert vpc.replace_reasons == ["cidr_block forces replacement"]

    subnet = plan.get_entry("aws_subnet.a")
    assert subnet.action == PlanAction.REPLACE
    assert subnet.after["vpc_id"] == KNOWN_AFTER_APPLY
    assert subnet.replace_reasons == ["vpc_id forces replacement"]
    assert (plan.to_add, plan.to_change, plan.to_destroy) == (2, 0, 2)


def test_tainted_resource_is_replaced(planner):
    plan = make_plan(planner, vpc_yaml(), applied_state(status=LifecycleState.TAINTED))
    vpc = plan.get_entry("aws_vpc.main")
    assert vpc.action == PlanAction.REPLACE
    assert vpc.replace_reasons == ["resource is tainted"]


def test_ignore_changes_keeps_recorded_value(planner):
    yaml_content = vpc_yaml(name="renamed").replace(
        "      tags: {Name: renamed}\n",
        "      tags: {Name: renamed}\n      lifecycle: {ignore_changes: [tags]}\n",
    )
    plan = make_plan(planner, yaml_content, applied_state())
    vpc = plan.get_entry("aws_vpc.main")
    assert vpc.action == PlanAction.NO_OP
    assert vpc.after["tags"] == {"Name": "main"}


def test_removed_resources_are_destroyed_dependents_first(planner):
    plan = make_plan(planner, "resource: {}\n", applied_state())

    assert [(e.address, e.action) for e in plan.entries] == [
        ("aws_subnet.a", PlanAction.DESTROY),
        ("aws_vpc.main", PlanAction.DESTROY),
    ]
    assert plan.get_entry("aws_vpc.main").before["cidr_block"] == "10.0.0.0/16"


def test_destroy_plan(planner):
    plan = make_plan(planner, vpc_yaml(), applied_state(), destroy=True)
    assert plan.destroy
    assert [e.address for e in plan.entries] == ["aws_subnet.a", "aws_vpc.main"]
    assert plan.to_destroy == 2


def test_destroys_are_planned_before_creates(planner):
    yaml_content = """
resource:
  aws_internet_gateway:
    gw: {}
"""
    plan = make_plan(planner, yaml_content, applied_state())
    assert [e.action for e in plan.entries] == [
        PlanAction.DESTROY,
        PlanAction.DESTROY,
        PlanAction.CREATE,
    ]


def test_prevent_destroy_blocks_replacement(planner):
    yaml_content = vpc_yaml(cidr="10.9.0.0/16").replace(
        "      tags:",
        "      lifecycle: {prevent_destroy: true}\n      tags:",
        1,
    )
    with pytest.raises(PlanError) as exc:
        make_plan(planner, yaml_content, applied_state())
    assert "prevent_destroy" in exc.value.errors[0]


def test_prevent_destroy_blocks_destroy(planner):
    yaml_content = vpc_yaml().replace(
        "      tags:",
        "      lifecycle: {prevent_destroy: true}\n      tags:",
        1,
    )
    with pytest.raises(PlanError) as exc:
        make_plan(planner, yaml_content, applied_state(), destroy=True)
    assert exc.value.errors == [
        "aws_vpc.main has lifecycle.prevent_destroy set and cannot be destroyed"
    ]


def test_render_plan(planner):
    plan = make_plan(planner, vpc_yaml(cidr="10.9.0.0/16"), applied_state())
    text = render_plan(plan)
    assert "-/+ aws_vpc.main  (cidr_block forces replacement)" in text
    assert text.endswith("Plan: 2 to add, 0 to change, 2 to destroy.")


def test_changed_attributes():
    before = {"a": 1, "b": [1, 2], "c": "x"}
    after = {"a": 1, "b": [1, 3], "d": True}
    assert ExecutionPlanner.changed_attributes(before, after) == ["b", "c", "d"]


TEMPLATE_YAML = """
resource:
  aws_vpc:
    main:
      cidr_block: 10.0.0.0/16
      tags: {Name: main}
  aws_launch_template:
    web:
      name: web
      description: "${aws_vpc.main.id}"
"""


def template_state(**vpc_overrides):
    """State matching TEMPLATE_YAML: a template whose description holds the VPC id."""
    state = applied_state(**vpc_overrides)
    del state.resources["aws_subnet.a"]
    state.resources["aws_launch_template.web"] = StateRecord(
        address="aws_launch_template.web",
        resource_type="aws_launch_template",
        name="web",
        provider_id="lt-0123456789abcdef0",
        attributes={"name": "web", "description": "vpc-0123456789abcdef0"},
        dependencies=["aws_vpc.main"],
    )
    return state


def test_update_referencing_replaced_resource_becomes_replacement(planner):
    plan = make_plan(planner, TEMPLATE_YAML, template_state(status=LifecycleState.TAINTED))

    template = plan.get_entry("aws_launch_template.web")
    assert template.action == PlanAction.REPLACE
    assert template.changed_attributes == ["description"]
    assert template.replace_reasons == ["references aws_vpc.main, which is replaced"]
    assert [(e.address, e.action) for e in plan.actions] == [
        ("aws_vpc.main", PlanAction.REPLACE),
        ("aws_launch_template.web", PlanAction.REPLACE),
    ]


def test_reference_to_updated_resource_stays_no_op(planner):
    plan = make_plan(
        planner,
        TEMPLATE_YAML.replace("{Name: main}", "{Name: renamed}"),
        template_state(),
    )
    assert plan.get_entry("aws_vpc.main").action == PlanAction.UPDATE
    assert plan.get_entry("aws_launch_template.web").action == PlanAction.NO_OP
