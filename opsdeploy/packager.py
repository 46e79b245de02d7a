"""Function packager: deterministic zip artifacts and Lambda create/update."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
import zipfile
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError

from opsdeploy.config import DEFAULT_HANDLER, DEFAULT_RUNTIME
from opsdeploy.errors import (
    InvocationError,
    NotFoundError,
    PackagingError,
    RetryTimeoutError,
    RoleNotReadyError,
)
from opsdeploy.provisioner import LAMBDA_SERVICE, describe_role, validate_trust_policy
from opsdeploy.schemas import DeployedFunction, FunctionArtifact
from opsdeploy.utils import classify_error, is_not_found, retry_transient

logger = logging.getLogger(__name__)

# Fixed entry metadata so identical inputs give byte-identical zips
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)
FILE_MODE = 0o644
EXEC_MODE = 0o755
EXCLUDED_DIRS = frozenset({"__pycache__", "tests"})
EXCLUDED_SUFFIXES = (".pyc", ".pyo")


# ---------------------------------------------------------------------------
# Build inputs
# ---------------------------------------------------------------------------

def iter_files(root: Path) -> list[str]:
    """Sorted posix paths of every packaged file under root."""
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in EXCLUDED_DIRS and not d.startswith(".")]
        for filename in filenames:
            if filename.endswith(EXCLUDED_SUFFIXES):
                continue
            found.append((Path(dirpath) / filename).relative_to(root).as_posix())
    return sorted(found)


def has_dependencies(dependency_spec: str | None) -> bool:
    if not dependency_spec:
        return False
    for line in Path(dependency_spec).read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return True
    return False


def compute_digest(source_dir: str | Path, dependency_spec: str | None = None) -> str:
    """Content address of the build inputs: the code tree plus the dependency manifest."""
    source = Path(source_dir)
    digest = hashlib.sha256()
    for rel in iter_files(source):
        digest.update(rel.encode())
        digest.update(b"\0")
        digest.update((source / rel).read_bytes())
        digest.update(b"\0")
    digest.update(b"dependencies\0")
    if dependency_spec:
        digest.update(Path(dependency_spec).read_bytes())
    return digest.hexdigest()


def check_entry_point(source_dir: Path, handler: str) -> Path:
    module = handler.rpartition(".")[0]
    entry = source_dir / (module.replace(".", "/") + ".py")
    if not entry.is_file():
        raise PackagingError(
            f"handler '{handler}' needs {entry.name} in {source_dir}",
            resource=str(source_dir),
            operation="build_artifact",
        )
    return entry


# ---------------------------------------------------------------------------
# Build steps
# ---------------------------------------------------------------------------

def install_dependencies(dependency_spec: str, target: Path, runner=subprocess.run) -> None:
    """pip install the manifest into the same directory as the function code."""
    cmd = [
        sys.executable, "-m", "pip", "install",
        "--quiet", "--no-compile", "--disable-pip-version-check",
        "-r", str(dependency_spec),
        "--target", str(target),
    ]
    logger.info(f"Installing dependencies from {dependency_spec}")
    result = runner(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise PackagingError(
            f"pip install failed ({result.returncode}): {(result.stderr or '').strip()[-500:]}",
            resource=str(dependency_spec),
            operation="install_dependencies",
        )


def write_zip(staging: Path, output: Path) -> None:
    with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as zf:
        for rel in iter_files(staging):
            path = staging / rel
            info = zipfile.ZipInfo(rel, date_time=ZIP_DATE_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            mode = EXEC_MODE if os.access(path, os.X_OK) else FILE_MODE
            info.external_attr = (0o100000 | mode) << 16
            zf.writestr(info, path.read_bytes())


def load_artifact(path: Path, digest: str) -> FunctionArtifact:
    data = path.read_bytes()
    return FunctionArtifact(
        path=str(path),
        digest=digest,
        code_sha256=base64.b64encode(hashlib.sha256(data).digest()).decode("utf-8"),
        size=len(data),
    )


def build_artifact(
    source_dir: str | Path,
    dependency_spec: str | None = None,
    build_dir: str | Path = ".build",
    handler: str = DEFAULT_HANDLER,
    runner=subprocess.run,
) -> FunctionArtifact:
    """Bundle code and dependencies into a zip named by the digest of its inputs.

    A zip already built from the same inputs is reused as-is.
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise PackagingError("source directory not found", resource=str(source), operation="build_artifact")
    check_entry_point(source, handler)
    if dependency_spec and not Path(dependency_spec).is_file():
        raise PackagingError("dependency manifest not found", resource=str(dependency_spec), operation="build_artifact")

    digest = compute_digest(source, dependency_spec)
    build = Path(build_dir)
    build.mkdir(parents=True, exist_ok=True)
    output = build / f"{digest}.zip"

    if output.is_file():
        logger.info(json.dumps({"event": "artifact_cache_hit", "digest": digest, "path": str(output)}))
        return load_artifact(output, digest)

    with tempfile.TemporaryDirectory(dir=build) as tmp:
        staging = Path(tmp) / "package"
        staging.mkdir()
        for rel in iter_files(source):
            (staging / rel).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source / rel, staging / rel)
        if has_dependencies(dependency_spec):
            install_dependencies(dependency_spec, staging, runner=runner)
        partial = Path(tmp) / "artifact.zip"
        write_zip(staging, partial)
        os.replace(partial, output)

    artifact = load_artifact(output, digest)
    logger.info(json.dumps({
        "event": "artifact_built",
        "digest": digest,
        "path": str(output),
        "size": artifact.size,
    }))
    return artifact


# ---------------------------------------------------------------------------
# Remote function
# ---------------------------------------------------------------------------

def _deployed(config: dict) -> DeployedFunction:
    return DeployedFunction(
        name=config["FunctionName"],
        arn=config["FunctionArn"],
        runtime=config.get("Runtime", ""),
        handler=config.get("Handler", ""),
        role_arn=config["Role"],
        code_sha256=config.get("CodeSha256", ""),
        memory_size=config.get("MemorySize", 128),
        timeout=config.get("Timeout", 3),
    )


def describe_function(clients: dict, function_name: str) -> DeployedFunction | None:
    try:
        config = clients["lambda"].get_function_configuration(FunctionName=function_name)
    except ClientError as e:
        if is_not_found(e):
            return None
        raise classify_error(e, resource=function_name, operation="describe_function") from e
    return _deployed(config)


def check_role_for_lambda(clients: dict, role_arn: str) -> None:
    """The role must exist and trust the Lambda service before a function can use it."""
    role_name = role_arn.rsplit("/", 1)[-1]
    role = describe_role(clients, role_name)
    if role is None:
        raise NotFoundError(
            "execution role does not exist; run provision-role first",
            resource=role_name,
            operation="deploy",
        )
    validate_trust_policy(role.trust_policy, [("Service", LAMBDA_SERVICE)], name=f"{role_name}/trust")


def deploy(
    clients: dict,
    artifact: FunctionArtifact,
    function_name: str,
    role_arn: str,
    runtime: str = DEFAULT_RUNTIME,
    handler: str = DEFAULT_HANDLER,
    memory_size: int = 128,
    timeout: int = 30,
    sleep=time.sleep,
) -> DeployedFunction:
    """Create the function if absent, else upload new code and keep its configuration."""
    lambda_client = clients["lambda"]
    check_role_for_lambda(clients, role_arn)
    zip_bytes = Path(artifact.path).read_bytes()
    existing = describe_function(clients, function_name)

    try:
        if existing is None:
            retry_transient(
                lambda: lambda_client.create_function(
                    FunctionName=function_name,
                    Runtime=runtime,
                    Role=role_arn,
                    Handler=handler,
                    Code={"ZipFile": zip_bytes},
                    MemorySize=memory_size,
                    Timeout=timeout,
                    Publish=True,
                ),
                resource=function_name,
                operation="create_function",
                sleep=sleep,
            )
            lambda_client.get_waiter("function_active_v2").wait(FunctionName=function_name)
            logger.info(json.dumps({
                "event": "function_created",
                "function_name": function_name,
                "code_sha256": artifact.code_sha256,
            }))
        elif existing.code_sha256 == artifact.code_sha256:
            logger.info(json.dumps({"event": "function_code_unchanged", "function_name": function_name}))
        else:
            retry_transient(
                lambda: lambda_client.update_function_code(
                    FunctionName=function_name,
                    ZipFile=zip_bytes,
                    Publish=True,
                ),
                resource=function_name,
                operation="update_function_code",
                sleep=sleep,
            )
            lambda_client.get_waiter("function_updated_v2").wait(FunctionName=function_name)
            logger.info(json.dumps({
                "event": "function_code_updated",
                "function_name": function_name,
                "code_sha256": artifact.code_sha256,
            }))
    except RetryTimeoutError as e:
        if isinstance(classify_error(e.cause), RoleNotReadyError):
            raise RoleNotReadyError(
                f"role {role_arn} still not assumable by Lambda: {e.message}",
                resource=function_name,
                operation=e.operation,
                cause=e,
            ) from e
        raise
    except (ClientError, BotoCoreError) as e:
        raise classify_error(e, resource=function_name, operation="deploy") from e

    return describe_function(clients, function_name)


def build_and_deploy(clients: dict, config, sleep=time.sleep) -> DeployedFunction:
    artifact = build_artifact(
        config.source_dir,
        dependency_spec=config.dependency_spec,
        build_dir=config.build_dir,
        handler=config.handler,
    )
    return deploy(
        clients,
        artifact,
        config.function_name,
        config.role_arn,
        runtime=config.runtime,
        handler=config.handler,
        memory_size=config.memory_size,
        timeout=config.timeout,
        sleep=sleep,
    )


def invoke_function(clients: dict, function_name: str, event: dict | None = None):
    """Synchronous invoke; returns the decoded JSON result."""
    try:
        resp = clients["lambda"].invoke(
            FunctionName=function_name,
            InvocationType="RequestResponse",
            Payload=json.dumps(event or {}).encode(),
        )
    except ClientError as e:
        raise classify_error(e, resource=function_name, operation="invoke") from e

    raw = resp["Payload"].read()
    result = json.loads(raw) if raw else None
    if resp.get("FunctionError"):
        detail = result if isinstance(result, dict) else {}
        raise InvocationError(
            f"{detail.get('errorType', resp['FunctionError'])}: {detail.get('errorMessage', raw[:300])}",
            resource=function_name,
            operation="invoke",
        )
    return result


def delete_function(clients: dict, function_name: str) -> bool:
    try:
        clients["lambda"].delete_function(FunctionName=function_name)
    except ClientError as e:
        if is_not_found(e):
            logger.info(json.dumps({"event": "function_already_absent", "function_name": function_name}))
            return False
        raise classify_error(e, resource=function_name, operation="delete_function") from e
    logger.info(json.dumps({"event": "function_deleted", "function_name": function_name}))
    return True
