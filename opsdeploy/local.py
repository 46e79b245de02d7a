"""Run the function body on this machine under the execution role's credentials.

The handler runs in a child interpreter whose environment is built from the
delegated credential alone; the operator's own profile files are hidden
from it so nothing falls back to the operator identity.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import tempfile
import uuid
import zipfile

from opsdeploy.errors import InvocationError
from opsdeploy.schemas import DelegatedCredential, FunctionArtifact

logger = logging.getLogger(__name__)

RESULT_MARKER = "__OPSDEPLOY_RESULT__"

CHILD_SCRIPT = f"""
import importlib, json, sys, time

source_dir, module_name, function_name, meta = sys.argv[1], sys.argv[2], sys.argv[3], json.loads(sys.argv[4])
sys.path.insert(0, source_dir)


class LocalContext:
    def __init__(self, meta):
        self.function_name = meta["function_name"]
        self.function_version = "$LATEST"
        self.memory_limit_in_mb = meta["memory_size"]
        self.aws_request_id = meta["request_id"]
        self.invoked_function_arn = meta["function_arn"]
        self._deadline = time.time() + meta["timeout"]

    def get_remaining_time_in_millis(self):
        return max(0, int((self._deadline - time.time()) * 1000))


handler = getattr(importlib.import_module(module_name), function_name)
event = json.loads(sys.stdin.read() or "{{}}")
result = handler(event, LocalContext(meta))
sys.stdout.write("\\n{RESULT_MARKER}" + json.dumps(result, default=str) + "\\n")
"""


def child_environment(config, credential: DelegatedCredential) -> dict:
    return {
        "PATH": os.environ.get("PATH", ""),
        "AWS_ACCESS_KEY_ID": credential.access_key_id,
        "AWS_SECRET_ACCESS_KEY": credential.secret_access_key,
        "AWS_SESSION_TOKEN": credential.session_token,
        "AWS_REGION": config.region,
        "AWS_DEFAULT_REGION": config.region,
        "AWS_CONFIG_FILE": os.devnull,
        "AWS_SHARED_CREDENTIALS_FILE": os.devnull,
        "AWS_LAMBDA_FUNCTION_NAME": config.function_name,
        "AWS_LAMBDA_FUNCTION_MEMORY_SIZE": str(config.memory_size),
        "AWS_LAMBDA_FUNCTION_TIMEOUT": str(config.timeout),
    }


def parse_result(stdout: str):
    for line in reversed(stdout.splitlines()):
        if line.startswith(RESULT_MARKER):
            return json.loads(line[len(RESULT_MARKER):])
    raise InvocationError("handler produced no result", operation="run_locally")


def run_locally(
    config,
    credential: DelegatedCredential,
    event: dict | None = None,
    runner=subprocess.run,
    code_dir: str | None = None,
):
    """Invoke <handler module>.<function>(event, context) in a child process; return its result.

    code_dir defaults to the source tree, which holds none of the packages from
    the dependency manifest; use run_artifact to run what actually ships.
    """
    meta = {
        "function_name": config.function_name,
        "function_arn": f"arn:aws:lambda:{config.region}:{config.account_id}:function:{config.function_name}",
        "memory_size": config.memory_size,
        "timeout": config.timeout,
        "request_id": str(uuid.uuid4()),
    }
    cmd = [
        sys.executable, "-c", CHILD_SCRIPT,
        str(code_dir or config.source_dir), config.handler_module, config.handler_function, json.dumps(meta),
    ]
    logger.info(json.dumps({
        "event": "local_invoke_started",
        "function_name": config.function_name,
        "request_id": meta["request_id"],
    }))
    try:
        result = runner(
            cmd,
            input=json.dumps(event or {}),
            capture_output=True,
            text=True,
            env=child_environment(config, credential),
            timeout=config.timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise InvocationError(
            f"handler did not finish within {config.timeout}s",
            resource=config.function_name,
            operation="run_locally",
            cause=e,
        ) from e

    if result.stdout:
        for line in result.stdout.splitlines():
            if line and not line.startswith(RESULT_MARKER):
                logger.info(f"[{config.function_name}] {line}")
    if result.returncode != 0:
        raise InvocationError(
            f"handler exited with {result.returncode}: {(result.stderr or '').strip()[-1000:]}",
            resource=config.function_name,
            operation="run_locally",
        )
    return parse_result(result.stdout)


def run_artifact(
    config,
    credential: DelegatedCredential,
    artifact: FunctionArtifact,
    event: dict | None = None,
    runner=subprocess.run,
):
    """Run the handler from the unpacked build zip, dependencies included."""
    with tempfile.TemporaryDirectory(prefix="opsdeploy-local-") as tmp:
        with zipfile.ZipFile(artifact.path) as zf:
            zf.extractall(tmp)
        return run_locally(config, credential, event, runner=runner, code_dir=tmp)
