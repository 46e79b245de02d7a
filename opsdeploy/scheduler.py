"""Schedule manager: EventBridge rule -> invoke permission -> target -> enabled.

Forward:  absent -> ruleCreated -> permissionGranted -> targetBound -> active
Teardown: active -> targetUnbound -> permissionRevoked -> ruleDeleted -> absent

Every call re-reads remote state first and performs only the missing
transitions, so a run interrupted at any point resumes cleanly. The rule is
created DISABLED and only enabled once the invoke permission and the target
are both in place: a schedule can never fire at a function it is not
allowed to invoke.
"""

from __future__ import annotations

import json
import logging
import time

from botocore.exceptions import ClientError

from opsdeploy.errors import NotFoundError, RemoteError
from opsdeploy.packager import describe_function
from opsdeploy.schemas import ScheduleObservation, ScheduleRule, ScheduleState, validate_expression
from opsdeploy.utils import classify_error, is_not_found, retry_transient

logger = logging.getLogger(__name__)

EVENTS_SERVICE = "events.amazonaws.com"
INVOKE_ACTION = "lambda:InvokeFunction"


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def statement_id(rule_name: str) -> str:
    return f"{rule_name}-invoke"[:100]


def target_id(function_name: str) -> str:
    return f"{function_name}-target"[:64]


def _targets_function(target_arn: str, function_name: str) -> bool:
    if ":function:" not in target_arn:
        return False
    return target_arn.split(":function:", 1)[1].split(":")[0] == function_name


# ---------------------------------------------------------------------------
# Observation
# ---------------------------------------------------------------------------

def _permission_statements(lambda_client, function_name: str) -> list[dict]:
    try:
        resp = lambda_client.get_policy(FunctionName=function_name)
    except ClientError as e:
        if is_not_found(e):
            return []
        raise
    policy = resp["Policy"]
    if isinstance(policy, str):
        policy = json.loads(policy)
    return policy.get("Statement", [])


def _grants_rule(statement: dict, rule_arn: str | None) -> bool:
    principal = statement.get("Principal")
    service = principal.get("Service") if isinstance(principal, dict) else principal
    source_arn = statement.get("Condition", {}).get("ArnLike", {}).get("AWS:SourceArn")
    return (
        statement.get("Effect", "Allow") == "Allow"
        and service == EVENTS_SERVICE
        and statement.get("Action") == INVOKE_ACTION
        and rule_arn is not None
        and source_arn == rule_arn
    )


def observe(clients: dict, rule_name: str, function_name: str) -> ScheduleObservation:
    events_client = clients["events"]
    obs = ScheduleObservation(rule_name=rule_name)
    try:
        try:
            rule = events_client.describe_rule(Name=rule_name)
        except ClientError as e:
            if not is_not_found(e):
                raise
            rule = None

        if rule is not None:
            obs.rule_exists = True
            obs.rule_arn = rule["Arn"]
            obs.expression = rule.get("ScheduleExpression")
            obs.enabled = rule.get("State") == "ENABLED"
            targets = events_client.list_targets_by_rule(Rule=rule_name).get("Targets", [])
            obs.target_count = len(targets)
            ours = target_id(function_name)
            for target in targets:
                if target["Id"] == ours and _targets_function(target["Arn"], function_name):
                    obs.target_bound = True
                else:
                    obs.extra_target_ids.append(target["Id"])

        sid = statement_id(rule_name)
        for statement in _permission_statements(clients["lambda"], function_name):
            if _grants_rule(statement, obs.rule_arn):
                obs.permission_granted = True
            elif statement.get("Sid") == sid:
                obs.stale_permission = True
    except ClientError as e:
        raise classify_error(e, resource=rule_name, operation="observe_schedule") from e
    return obs


def describe_schedule(clients: dict, rule_name: str, function_name: str) -> ScheduleRule | None:
    obs = observe(clients, rule_name, function_name)
    if not obs.rule_exists:
        return None
    target_arn = None
    if obs.target_bound:
        targets = clients["events"].list_targets_by_rule(Rule=rule_name)["Targets"]
        target_arn = next(t["Arn"] for t in targets if _targets_function(t["Arn"], function_name))
    return ScheduleRule(
        name=rule_name,
        expression=obs.expression or "",
        enabled=obs.enabled,
        arn=obs.rule_arn,
        target_function_arn=target_arn,
    )


def _log_transition(rule_name: str, state: ScheduleState):
    logger.info(json.dumps({"event": "schedule_transition", "rule_name": rule_name, "state": state.value}))


# ---------------------------------------------------------------------------
# Forward
# ---------------------------------------------------------------------------

def ensure_schedule(
    clients: dict,
    rule_name: str,
    expression: str,
    function_name: str,
    sleep=time.sleep,
) -> ScheduleRule:
    """Drive the schedule to active, performing only the transitions still missing."""
    validate_expression(expression)
    function = describe_function(clients, function_name)
    if function is None:
        raise NotFoundError(
            "function does not exist; run build-and-deploy first",
            resource=function_name,
            operation="schedule",
        )

    events_client = clients["events"]
    lambda_client = clients["lambda"]
    obs = observe(clients, rule_name, function_name)
    logger.info(json.dumps({
        "event": "schedule_observed",
        "rule_name": rule_name,
        "state": obs.current_state().value,
    }))

    def _call(operation, fn):
        return retry_transient(fn, resource=rule_name, operation=operation, sleep=sleep)

    try:
        if not obs.rule_exists or obs.expression != expression:
            resp = _call("put_rule", lambda: events_client.put_rule(
                Name=rule_name,
                ScheduleExpression=expression,
                State="ENABLED" if obs.enabled else "DISABLED",
                Description=f"Schedule for {function_name}",
            ))
            obs.rule_exists = True
            obs.rule_arn = resp["RuleArn"]
            obs.expression = expression
            _log_transition(rule_name, ScheduleState.RULE_CREATED)

        if not obs.permission_granted:
            sid = statement_id(rule_name)
            if obs.stale_permission:
                _call("remove_permission", lambda: lambda_client.remove_permission(
                    FunctionName=function_name, StatementId=sid,
                ))
            _call("add_permission", lambda: lambda_client.add_permission(
                FunctionName=function_name,
                StatementId=sid,
                Action=INVOKE_ACTION,
                Principal=EVENTS_SERVICE,
                SourceArn=obs.rule_arn,
            ))
            obs.permission_granted = True
            _log_transition(rule_name, ScheduleState.PERMISSION_GRANTED)

        if obs.extra_target_ids:
            extra = list(obs.extra_target_ids)
            resp = _call("remove_targets", lambda: events_client.remove_targets(Rule=rule_name, Ids=extra))
            if resp.get("FailedEntryCount"):
                raise RemoteError(
                    f"remove_targets rejected: {resp.get('FailedEntries')}",
                    resource=rule_name,
                    operation="remove_targets",
                )
            logger.info(json.dumps({"event": "schedule_extra_targets_removed", "rule_name": rule_name, "ids": extra}))
            obs.extra_target_ids = []

        if not obs.target_bound:
            resp = _call("put_targets", lambda: events_client.put_targets(
                Rule=rule_name,
                Targets=[{"Id": target_id(function_name), "Arn": function.arn}],
            ))
            if resp.get("FailedEntryCount"):
                raise RemoteError(
                    f"put_targets rejected: {resp.get('FailedEntries')}",
                    resource=rule_name,
                    operation="put_targets",
                )
            obs.target_bound = True
            _log_transition(rule_name, ScheduleState.TARGET_BOUND)

        if not obs.enabled:
            _call("enable_rule", lambda: events_client.enable_rule(Name=rule_name))
            _log_transition(rule_name, ScheduleState.ACTIVE)
    except ClientError as e:
        raise classify_error(e, resource=rule_name, operation="schedule") from e

    final = observe(clients, rule_name, function_name)
    if final.current_state() is not ScheduleState.ACTIVE:
        raise RemoteError(
            f"schedule ended in state {final.current_state().value}, expected active",
            resource=rule_name,
            operation="schedule",
        )
    return describe_schedule(clients, rule_name, function_name)


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

def teardown_schedule(clients: dict, rule_name: str, function_name: str) -> ScheduleState:
    """Reverse the forward chain; anything already missing counts as done."""
    events_client = clients["events"]
    lambda_client = clients["lambda"]

    try:
        try:
            targets = events_client.list_targets_by_rule(Rule=rule_name).get("Targets", [])
            if targets:
                events_client.remove_targets(Rule=rule_name, Ids=[t["Id"] for t in targets])
        except ClientError as e:
            if not is_not_found(e):
                raise
        _log_transition(rule_name, ScheduleState.TARGET_UNBOUND)

        try:
            lambda_client.remove_permission(FunctionName=function_name, StatementId=statement_id(rule_name))
        except ClientError as e:
            if not is_not_found(e):
                raise
        _log_transition(rule_name, ScheduleState.PERMISSION_REVOKED)

        try:
            events_client.delete_rule(Name=rule_name)
        except ClientError as e:
            if not is_not_found(e):
                raise
        _log_transition(rule_name, ScheduleState.RULE_DELETED)
    except ClientError as e:
        raise classify_error(e, resource=rule_name, operation="teardown_schedule") from e

    _log_transition(rule_name, ScheduleState.ABSENT)
    return ScheduleState.ABSENT
