"""Tests for opsdeploy.scheduler against moto's EventBridge and Lambda."""

import json
from unittest.mock import MagicMock

import botocore.exceptions
import pytest

from opsdeploy.errors import NotFoundError, RemoteError, ValidationError
from opsdeploy.packager import build_and_deploy
from opsdeploy.provisioner import provision_role
from opsdeploy.scheduler import (
    EVENTS_SERVICE,
    INVOKE_ACTION,
    describe_schedule,
    ensure_schedule,
    observe,
    statement_id,
    target_id,
    teardown_schedule,
    validate_expression,
)
from opsdeploy.schemas import ScheduleState

RULE = "ops-schedule"
FUNCTION = "MyOpsFunction"


@pytest.fixture
def deployed(clients, config, sleeps):
    provision_role(clients, config, sleep=sleeps.append)
    return build_and_deploy(clients, config, sleep=sleeps.append)


def _statements(clients):
    try:
        policy = clients["lambda"].get_policy(FunctionName=FUNCTION)["Policy"]
    except botocore.exceptions.ClientError:
        return []
    return json.loads(policy)["Statement"]


def _targets(clients):
    return clients["events"].list_targets_by_rule(Rule=RULE)["Targets"]


def _rule_names(clients):
    return [r["Name"] for r in clients["events"].list_rules()["Rules"]]


# ── Expressions ──────────────────────────────────────────────────────

@pytest.mark.parametrize("expression", [
    "rate(5 minutes)",
    "rate(1 minute)",
    "rate(1 day)",
    "rate(12 hours)",
    "cron(0 12 * * ? *)",
    "cron(0/15 * ? * MON-FRI *)",
])
def test_valid_expressions(expression):
    assert validate_expression(expression) == expression


@pytest.mark.parametrize("expression", [
    "rate(1 minutes)",
    "rate(5 minute)",
    "rate(0 minutes)",
    "rate(5 weeks)",
    "cron(0 12 * * *)",
    "cron(0 12 * * * *)",
    "cron(0 12 ? * ? *)",
    "every 5 minutes",
    "",
])
def test_invalid_expressions(expression):
    with pytest.raises(ValidationError):
        validate_expression(expression)


# ── Forward chain ────────────────────────────────────────────────────

class TestEnsureSchedule:
    def test_absent_to_active(self, clients, deployed, sleeps):
        assert observe(clients, RULE, FUNCTION).current_state() is ScheduleState.ABSENT

        rule = ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        assert rule.enabled is True
        assert rule.expression == "rate(5 minutes)"
        assert rule.target_function_arn == deployed.arn
        assert [t["Arn"] for t in _targets(clients)] == [deployed.arn]
        [statement] = _statements(clients)
        assert statement["Sid"] == statement_id(RULE)
        assert statement["Action"] == INVOKE_ACTION
        assert statement["Principal"] == {"Service": EVENTS_SERVICE}
        assert statement["Condition"]["ArnLike"]["AWS:SourceArn"] == rule.arn

    def test_idempotent(self, clients, deployed, sleeps):
        first = ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)
        events = clients["events"]
        events.put_rule = MagicMock(wraps=events.put_rule)
        events.put_targets = MagicMock(wraps=events.put_targets)

        second = ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        assert second == first
        events.put_rule.assert_not_called()
        events.put_targets.assert_not_called()
        assert _rule_names(clients) == [RULE]
        assert len(_targets(clients)) == 1
        assert len(_statements(clients)) == 1

    def test_resumes_from_rule_only(self, clients, deployed, sleeps):
        clients["events"].put_rule(Name=RULE, ScheduleExpression="rate(5 minutes)", State="DISABLED")
        assert observe(clients, RULE, FUNCTION).current_state() is ScheduleState.RULE_CREATED

        rule = ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        assert rule.enabled is True
        assert len(_targets(clients)) == 1
        assert len(_statements(clients)) == 1

    def test_restores_removed_permission(self, clients, deployed, sleeps):
        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)
        clients["lambda"].remove_permission(FunctionName=FUNCTION, StatementId=statement_id(RULE))
        assert observe(clients, RULE, FUNCTION).current_state() is ScheduleState.RULE_CREATED

        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        assert observe(clients, RULE, FUNCTION).current_state() is ScheduleState.ACTIVE
        assert len(_statements(clients)) == 1

    def test_replaces_stale_permission(self, clients, deployed, sleeps):
        clients["lambda"].add_permission(
            FunctionName=FUNCTION,
            StatementId=statement_id(RULE),
            Action=INVOKE_ACTION,
            Principal=EVENTS_SERVICE,
            SourceArn="arn:aws:events:us-east-1:123456789012:rule/some-old-rule",
        )
        assert observe(clients, RULE, FUNCTION).stale_permission is True

        rule = ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        [statement] = _statements(clients)
        assert statement["Condition"]["ArnLike"]["AWS:SourceArn"] == rule.arn

    def test_expression_change_keeps_binding(self, clients, deployed, sleeps):
        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)
        rule = ensure_schedule(clients, RULE, "rate(1 hour)", FUNCTION, sleep=sleeps.append)
        assert rule.expression == "rate(1 hour)"
        assert rule.enabled is True
        assert len(_targets(clients)) == 1

    def test_target_for_another_function_replaced(self, clients, deployed, sleeps):
        old_arn = "arn:aws:lambda:us-east-1:123456789012:function:OldFunction"
        clients["events"].put_rule(Name=RULE, ScheduleExpression="rate(5 minutes)", State="DISABLED")
        clients["events"].put_targets(Rule=RULE, Targets=[{"Id": "OldFunction-target", "Arn": old_arn}])
        obs = observe(clients, RULE, FUNCTION)
        assert obs.target_bound is False
        assert obs.extra_target_ids == ["OldFunction-target"]

        rule = ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        assert [(t["Id"], t["Arn"]) for t in _targets(clients)] == [(target_id(FUNCTION), deployed.arn)]
        assert rule.target_function_arn == deployed.arn
        assert observe(clients, RULE, FUNCTION).current_state() is ScheduleState.ACTIVE

    def test_extra_target_on_active_schedule(self, clients, deployed, sleeps):
        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)
        clients["events"].put_targets(Rule=RULE, Targets=[{"Id": "extra", "Arn": deployed.arn}])
        assert observe(clients, RULE, FUNCTION).current_state() is ScheduleState.PERMISSION_GRANTED

        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        assert [t["Id"] for t in _targets(clients)] == [target_id(FUNCTION)]
        assert observe(clients, RULE, FUNCTION).current_state() is ScheduleState.ACTIVE

    def test_failed_permission_leaves_rule_disabled(self, clients, deployed, sleeps):
        clients["lambda"].add_permission = MagicMock(side_effect=botocore.exceptions.ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "not allowed"}}, "AddPermission",
        ))
        with pytest.raises(RemoteError):
            ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        obs = observe(clients, RULE, FUNCTION)
        assert obs.rule_exists is True
        assert obs.enabled is False
        assert obs.target_count == 0
        assert obs.current_state() is ScheduleState.RULE_CREATED

    def test_missing_function(self, clients, sleeps):
        with pytest.raises(NotFoundError, match="build-and-deploy"):
            ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)
        assert _rule_names(clients) == []

    def test_invalid_expression_touches_nothing(self, clients, deployed, sleeps):
        with pytest.raises(ValidationError):
            ensure_schedule(clients, RULE, "rate(5 minute)", FUNCTION, sleep=sleeps.append)
        assert _rule_names(clients) == []


# ── Teardown ─────────────────────────────────────────────────────────

class TestTeardownSchedule:
    def test_active_to_absent(self, clients, deployed, sleeps):
        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)

        assert teardown_schedule(clients, RULE, FUNCTION) is ScheduleState.ABSENT

        assert _rule_names(clients) == []
        assert _statements(clients) == []
        assert describe_schedule(clients, RULE, FUNCTION) is None

    def test_already_absent(self, clients, deployed):
        assert teardown_schedule(clients, RULE, FUNCTION) is ScheduleState.ABSENT

    def test_function_gone(self, clients):
        assert teardown_schedule(clients, RULE, FUNCTION) is ScheduleState.ABSENT

    def test_partial_state(self, clients, deployed, sleeps):
        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)
        clients["events"].remove_targets(Rule=RULE, Ids=[t["Id"] for t in _targets(clients)])

        assert teardown_schedule(clients, RULE, FUNCTION) is ScheduleState.ABSENT
        assert _rule_names(clients) == []

    def test_removes_foreign_targets_too(self, clients, deployed, sleeps):
        ensure_schedule(clients, RULE, "rate(5 minutes)", FUNCTION, sleep=sleeps.append)
        clients["events"].put_targets(Rule=RULE, Targets=[{"Id": "extra", "Arn": deployed.arn}])

        teardown_schedule(clients, RULE, FUNCTION)

        assert _rule_names(clients) == []
