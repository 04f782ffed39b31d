"""Tests for the YAML configuration parser."""

import pytest

from converge.engine.parser import ConfigParser, ParseError


@pytest.fixture
def parser():
    return ConfigParser()


def test_parse_network(parser, network_yaml):
    config = parser.parse(network_yaml)

    assert [r.base_address for r in config.resources] == [
        "aws_vpc.main",
        "aws_subnet.public",
        "aws_security_group.web",
    ]
    assert [r.declaration_order for r in config.resources] == [0, 1, 2]
    subnet = config.get_resource("aws_subnet.public")
    assert subnet.count == "${var.subnet_count}"
    assert "count" not in subnet.attributes
    assert config.variable_values == {"subnet_count": 2, "environment": "dev"}
    assert set(config.outputs) == {"vpc_id", "subnet_ids"}


def test_variable_override(parser, network_yaml):
    config = parser.parse(network_yaml, {"subnet_count": 3})
    assert config.variable_values["subnet_count"] == 3


def test_undeclared_variable_override(parser, network_yaml):
    with pytest.raises(ParseError) as exc:
        parser.parse(network_yaml, {"region": "eu-west-1"})
    assert "undeclared variable: 'region'" in exc.value.errors[0]


def test_required_variable_without_value(parser):
    yaml_content = """
variable:
  cidr: {}
resource:
  aws_vpc:
    main:
      cidr_block: "${var.cidr}"
"""
    with pytest.raises(ParseError) as exc:
        parser.parse(yaml_content)
    assert exc.value.errors == ["No value for required variable: 'cidr'"]

    config = parser.parse(yaml_content, {"cidr": "10.1.0.0/16"})
    assert config.variable_values["cidr"] == "10.1.0.0/16"


def test_meta_arguments(parser):
    config = parser.parse("""
resource:
  aws_vpc:
    main:
      cidr_block: 10.0.0.0/16
      lifecycle:
        prevent_destroy: true
        ignore_changes: [tags]
      tags: {Name: main}
  aws_internet_gateway:
    gw:
      depends_on: [aws_vpc.main]
""")
    vpc = config.get_resource("aws_vpc.main")
    assert vpc.lifecycle.prevent_destroy
    assert vpc.lifecycle.ignore_changes == ["tags"]
    assert "lifecycle" not in vpc.attributes
    assert config.get_resource("aws_internet_gateway.gw").depends_on == ["aws_vpc.main"]


@pytest.mark.parametrize(
    "yaml_content, expected",
    [
        ("resource: [", "YAML syntax error"),
        ("", "Empty configuration"),
        ("- a\n- b\n", "must be a YAML mapping"),
    ],
)
def test_malformed_input(parser, yaml_content, expected):
    with pytest.raises(ParseError, match=expected):
        parser.parse(yaml_content)


@pytest.mark.parametrize(
    "yaml_content, expected",
    [
        ("module: {}\nresource: {}\n", "Unknown top-level section: 'module'"),
        ("variable: {}\n", "Missing required section: 'resource'"),
        ("resource:\n  aws_vpc: [a]\n", "must be a mapping of names"),
        ("resource:\n  aws_vpc:\n    main:\n      count: -1\n", "must not be negative"),
        ("resource:\n  aws_vpc:\n    main:\n      depends_on: aws_subnet.a\n", "must be a list"),
        ("resource:\n  aws_vpc:\n    main:\n      depends_on: ['bad ref']\n", "must be TYPE.NAME"),
        ("resource: {}\noutput:\n  x: {description: y}\n", "output.x.value is required"),
    ],
)
def test_structure_errors(parser, yaml_content, expected):
    with pytest.raises(ParseError) as exc:
        parser.parse(yaml_content)
    assert any(expected in error for error in exc.value.errors)


@pytest.mark.parametrize(
    "resource_block, expected",
    [
        ("vpc_id: '${aws_vpc.missing.id}'", "references undeclared resource 'aws_vpc.missing'"),
        ("vpc_id: '${var.nope}'", "references undeclared variable 'nope'"),
        ("cidr_block: '10.0.${count.index}.0/24'", "uses count.index without count"),
        ("vpc_id: '${not valid}'", "Invalid reference"),
        ("depends_on: [aws_vpc.missing]", "depends on undeclared resource"),
    ],
)
def test_semantic_errors(parser, resource_block, expected):
    yaml_content = f"""
resource:
  aws_subnet:
    a:
      {resource_block}
"""
    with pytest.raises(ParseError) as exc:
        parser.parse(yaml_content)
    assert any(expected in error for error in exc.value.errors), exc.value.errors


def test_count_may_only_reference_variables(parser):
    with pytest.raises(ParseError) as exc:
        parser.parse("""
resource:
  aws_vpc:
    main: {cidr_block: 10.0.0.0/16}
  aws_subnet:
    a:
      count: "${aws_vpc.main.id}"
""")
    assert "aws_subnet.a.count may only reference variables" in exc.value.errors


def test_count_must_be_integer(parser):
    with pytest.raises(ParseError) as exc:
        parser.parse("""
variable:
  n: {default: many}
resource:
  aws_subnet:
    a:
      count: "${var.n}"
""")
    assert "must evaluate to an integer" in exc.value.errors[0]


def test_output_cannot_use_count_index(parser):
    with pytest.raises(ParseError) as exc:
        parser.parse("""
resource:
  aws_vpc:
    main: {cidr_block: 10.0.0.0/16}
output:
  bad:
    value: "${count.index}"
""")
    assert exc.value.errors == ["output.bad cannot use count.index"]


def test_output_rejects_unknown_keys(parser):
    with pytest.raises(ParseError) as exc:
        parser.parse("""
resource:
  aws_vpc:
    main: {cidr_block: 10.0.0.0/16}
output:
  vpc_id:
    name: other
    value: "${aws_vpc.main.id}"
""")
    assert exc.value.message == "Configuration validation failed"
    assert exc.value.errors == [
        "output.vpc_id: unknown key 'name'. Allowed: ['value', 'description', 'sensitive']"
    ]


def test_output_keeps_description_and_sensitive(parser):
    config = parser.parse("""
resource:
  aws_vpc:
    main: {cidr_block: 10.0.0.0/16}
output:
  vpc_id:
    value: "${aws_vpc.main.id}"
    description: VPC id
    sensitive: true
""")
    output = config.outputs["vpc_id"]
    assert (output.name, output.description, output.sensitive) == ("vpc_id", "VPC id", True)


def test_bundled_eks_configuration(parser, eks_yaml):
    config = parser.parse(eks_yaml)
    assert config.get_resource("aws_eks_cluster.eks_cluster") is not None
    assert {"cluster_endpoint", "load_balancer_dns"} <= set(config.outputs)
