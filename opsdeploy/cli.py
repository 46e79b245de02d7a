"""
opsdeploy - provision, deploy, test, schedule and tear down one scheduled Lambda.

Usage:
    opsdeploy provision-role <deployment> [--config deployments.json]
    opsdeploy build-and-deploy <deployment>
    opsdeploy test-locally <deployment> [--event '{"key": "value"}']
    opsdeploy schedule <deployment>
    opsdeploy status <deployment>
    opsdeploy invoke <deployment> [--event ...]
    opsdeploy teardown <deployment> [--keep-role]
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from botocore.exceptions import BotoCoreError

from opsdeploy import broker, local, packager, provisioner, scheduler
from opsdeploy.clients import create_aws_clients, create_session
from opsdeploy.config import DEFAULT_CONFIG_FILE, load_config
from opsdeploy.errors import DeployError, ValidationError
from opsdeploy.utils import classify_error

logger = logging.getLogger(__name__)


def _event(args) -> dict:
    if args.event_file:
        with open(args.event_file) as f:
            raw = f.read()
    else:
        raw = args.event or "{}"
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"event is not valid JSON: {e}", operation="parse_event") from e


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_provision_role(config, clients, args):
    role = provisioner.provision_role(clients, config)
    print(f"Role '{role.name}' ready: {role.arn}")
    print(f"  Inline policies:  {', '.join(sorted(role.inline_policies)) or 'none'}")
    print(f"  Managed policies: {', '.join(sorted(role.managed_policy_arns)) or 'none'}")


def cmd_build_and_deploy(config, clients, args):
    function = packager.build_and_deploy(clients, config)
    print(f"Function '{function.name}' deployed: {function.arn}")
    print(f"  CodeSha256: {function.code_sha256}")


def cmd_test_locally(config, clients, args):
    credential = broker.assume(
        clients,
        config.role_arn,
        f"{config.stack_name}-local-test",
        ttl=config.session_ttl,
    )
    print(f"Assumed {config.role_arn} until {credential.expiration.isoformat()}")
    artifact = packager.build_artifact(
        config.source_dir,
        dependency_spec=config.dependency_spec,
        build_dir=config.build_dir,
        handler=config.handler,
    )
    result = local.run_artifact(config, credential, artifact, _event(args))
    print(json.dumps(result, indent=2, default=str))


def cmd_schedule(config, clients, args):
    rule = scheduler.ensure_schedule(
        clients, config.rule_name, config.schedule_expression, config.function_name,
    )
    print(f"Schedule '{rule.name}' active: {rule.expression} -> {rule.target_function_arn}")


def cmd_invoke(config, clients, args):
    result = packager.invoke_function(clients, config.function_name, _event(args))
    print(json.dumps(result, indent=2, default=str))


def cmd_status(config, clients, args):
    role = provisioner.describe_role(clients, config.role_name)
    function = packager.describe_function(clients, config.function_name)
    obs = scheduler.observe(clients, config.rule_name, config.function_name)

    print(f"Deployment '{config.name}' ({config.region})")
    print(f"  Role:     {role.arn if role else 'ABSENT'}")
    print(f"  Function: {function.arn if function else 'ABSENT'}")
    print(f"  Schedule: {obs.current_state().value}"
          + (f" ({obs.expression})" if obs.expression else ""))


def cmd_teardown(config, clients, args):
    scheduler.teardown_schedule(clients, config.rule_name, config.function_name)
    print(f"Schedule '{config.rule_name}': absent")
    deleted = packager.delete_function(clients, config.function_name)
    print(f"Function '{config.function_name}': {'deleted' if deleted else 'already absent'}")
    if args.keep_role:
        print(f"Role '{config.role_name}': kept")
        return
    deleted = provisioner.delete_role(clients, config.role_name)
    print(f"Role '{config.role_name}': {'deleted' if deleted else 'already absent'}")


COMMANDS = {
    "provision-role": (cmd_provision_role, "Create or update the execution role"),
    "build-and-deploy": (cmd_build_and_deploy, "Package the function and create/update it"),
    "test-locally": (cmd_test_locally, "Run the handler locally under the role's credentials"),
    "schedule": (cmd_schedule, "Create the schedule rule, permission and target"),
    "status": (cmd_status, "Show the remote state of role, function and schedule"),
    "invoke": (cmd_invoke, "Invoke the deployed function"),
    "teardown": (cmd_teardown, "Remove schedule, function and role"),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opsdeploy",
        description="Deploy and schedule an operational Lambda function",
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Deployment config file (JSON)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, (_, help_text) in COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("deployment", help="Deployment name in the config file")
        if name in ("test-locally", "invoke"):
            group = sub.add_mutually_exclusive_group()
            group.add_argument("--event", help="Event payload as JSON")
            group.add_argument("--event-file", help="File holding the event payload")
        if name == "teardown":
            sub.add_argument("--keep-role", action="store_true", help="Leave the execution role in place")
    return parser


def main(argv=None, clients=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    handler, _ = COMMANDS[args.command]
    try:
        config = load_config(args.config, args.deployment)
        if clients is None:
            clients = create_aws_clients(create_session(config))
        handler(config, clients, args)
    except (DeployError, BotoCoreError) as e:
        err = classify_error(e, operation=args.command)
        stage = err.operation or args.command
        entity = err.resource or args.deployment
        print(f"FAILED {args.command}: {entity} at {stage}: {err.message}", file=sys.stderr)
        if err.cause is not None:
            logger.debug(f"Underlying cause: {err.cause!r}")
        return 1

    print(f"OK {args.command} {args.deployment}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
