"""Tests for rollout definition resolution."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from api.config_resolver import get_ssm_parameter, resolve_rollout_definition
from api.errors import RolloutConfigError


def _ssm(values: dict[str, str]) -> MagicMock:
    client = MagicMock()

    def get_parameter(Name):
        if Name not in values:
            raise ClientError(
                {"Error": {"Code": "ParameterNotFound", "Message": Name}}, "GetParameter"
            )
        return {"Parameter": {"Name": Name, "Value": values[Name]}}

    client.get_parameter.side_effect = get_parameter
    return client


def test_endpoints_follow_echoserver_convention(definition):
    assert definition.endpoints == {
        "blue": "http://echoserver.blue.example.com/",
        "green": "http://echoserver.green.example.com/",
    }
    assert definition.environment("green").version == "1.21"


def test_unknown_environment_lookup_raises(definition):
    with pytest.raises(KeyError):
        definition.environment("purple")


def test_explicit_dns_settings_skip_ssm(definition_input):
    ssm = MagicMock()

    resolved = resolve_rollout_definition(definition_input, ssm_client=ssm)

    ssm.get_parameter.assert_not_called()
    assert resolved.hosted_zone_id == "Z123EXAMPLE"


def test_missing_dns_settings_are_read_from_ssm(definition_input):
    config = definition_input.model_copy(update={"domain_name": None, "hosted_zone_id": None})
    ssm = _ssm(
        {
            "/eks-cdk-pipelines/zoneName": "Apps.Example.org.",
            "/eks-cdk-pipelines/hostZoneId": "ZFROMSSM",
        }
    )

    resolved = resolve_rollout_definition(config, ssm_client=ssm)

    assert resolved.domain_name == "apps.example.org"
    assert resolved.hosted_zone_id == "ZFROMSSM"
    assert resolved.endpoints["green"] == "http://echoserver.green.apps.example.org/"


def test_missing_ssm_parameter_is_a_config_error(definition_input):
    config = definition_input.model_copy(update={"hosted_zone_id": None})

    with pytest.raises(RolloutConfigError, match="does not exist"):
        resolve_rollout_definition(config, ssm_client=_ssm({}))


def test_empty_ssm_parameter_is_a_config_error():
    with pytest.raises(RolloutConfigError, match="empty"):
        get_ssm_parameter(_ssm({"/x": "  "}), "/x")


def test_created_at_is_preserved(definition_input):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)

    resolved = resolve_rollout_definition(definition_input, created_at=created)

    assert resolved.created_at == created
    assert resolved.updated_at > created
