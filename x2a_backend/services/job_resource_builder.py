"""
Kubernetes resource builders for x2a migration jobs.

Pure functions turning (phase, project, module, credentials, settings) into
the three cluster objects a run needs:
- Project Secret: long-lived LLM + AAP credentials, one per project
- Job Secret: short-lived git credentials, one per job, garbage-collected with the Job
- Job: init container preparing both repositories + the x2a convertor container

Nothing here talks to the cluster; see kube_service.py for that.
"""

from kubernetes import client
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import re
import secrets
import shlex

from ..config import Settings, AAPCredentials
from ..errors import ConfigurationError, InputError
from ..schemas import MigrationPhase

logger = logging.getLogger(__name__)

MANAGED_BY = "x2a-backend-plugin"
LABEL_PREFIX = "x2a.redhat.com"
MAX_LABEL_LENGTH = 63
JOB_BACKOFF_LIMIT = 3

WORKSPACE_VOLUME = "workspace"
WORKSPACE_DIR = "/workspace"
SOURCE_DIR = f"{WORKSPACE_DIR}/source"
TARGET_DIR = f"{WORKSPACE_DIR}/target"

SOURCE_TECHNOLOGY = "Chef"

_INVALID_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


@dataclass
class GitRepoCredentials:
    url: str
    token: str
    branch: str


@dataclass
class JobCreateParams:
    job_id: str
    project_id: str
    project_name: str
    project_abbreviation: str
    phase: MigrationPhase
    user: str
    callback_url: str
    callback_token: str
    module_id: Optional[str] = None
    module_name: Optional[str] = None
    user_prompt: Optional[str] = None


# =============================================================================
# Names and Labels
# =============================================================================

def project_secret_name(project_id: str) -> str:
    return f"x2a-project-secret-{project_id}"


def job_secret_name(job_id: str) -> str:
    return f"x2a-job-secret-{job_id}"


def generate_job_name(phase: MigrationPhase) -> str:
    """job-x2a-<phase>-<8 hex chars>, fresh on every call."""
    return f"job-x2a-{MigrationPhase(phase).value}-{secrets.token_hex(4)}"


def _is_alphanumeric(char: str) -> bool:
    return ("a" <= char <= "z") or ("A" <= char <= "Z") or ("0" <= char <= "9")


def sanitize_label_value(value: str) -> str:
    """
    Turn free text into a valid Kubernetes label value.

    Label values must match (([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])? and
    be at most 63 characters. The input is truncated before any other work
    and the edges are trimmed by a linear scan, so the cost is bounded by
    63 steps regardless of the input length.

    Args:
        value: Arbitrary user-controlled text (project name, user ref, ...)

    Returns:
        Sanitized label value (possibly empty)
    """
    sanitized = value[:MAX_LABEL_LENGTH]
    sanitized = _INVALID_LABEL_CHARS.sub("-", sanitized)

    start = 0
    while start < len(sanitized) and not _is_alphanumeric(sanitized[start]):
        start += 1

    end = len(sanitized)
    while end > start and not _is_alphanumeric(sanitized[end - 1]):
        end -= 1

    return sanitized[start:end][:MAX_LABEL_LENGTH]


def get_job_labels(params: JobCreateParams) -> Dict[str, str]:
    labels = {
        "app.kubernetes.io/name": "x2a-job",
        "app.kubernetes.io/component": "migration",
        "app.kubernetes.io/managed-by": MANAGED_BY,
        f"{LABEL_PREFIX}/project-id": str(params.project_id),
        f"{LABEL_PREFIX}/project-name": sanitize_label_value(params.project_name),
        f"{LABEL_PREFIX}/phase": MigrationPhase(params.phase).value,
        f"{LABEL_PREFIX}/user": sanitize_label_value(params.user),
        f"{LABEL_PREFIX}/job-id": str(params.job_id),
    }

    if params.module_id:
        labels[f"{LABEL_PREFIX}/module-id"] = str(params.module_id)

    if params.module_name:
        labels[f"{LABEL_PREFIX}/module-name"] = sanitize_label_value(params.module_name)

    return labels


# =============================================================================
# Credential Validation
# =============================================================================

def resolve_aap_credentials(
    user_credentials: Optional[AAPCredentials],
    settings: Settings
) -> Tuple[AAPCredentials, str]:
    """
    Pick the AAP credentials for a run.

    User-supplied credentials win over the system configuration.

    Returns:
        (credentials, source) where source is "user-provided" or "config"
    """
    if user_credentials is not None:
        return user_credentials, "user-provided"

    configured = settings.aap_credentials
    if configured is None:
        raise ConfigurationError(
            "AAP credentials must be provided either in configuration "
            "or by the user in the run request"
        )
    return configured, "config"


def validate_aap_credentials(credentials: AAPCredentials) -> str:
    """
    Enforce oauthToken XOR (username AND password).

    Returns:
        Auth method: "oauth-token" or "basic"
    """
    has_token = bool(credentials.oauthToken)
    has_username = bool(credentials.username)
    has_password = bool(credentials.password)

    if has_username != has_password:
        raise InputError("AAP credentials must include both username and password")

    has_basic = has_username and has_password

    if not has_token and not has_basic:
        raise InputError("AAP credentials must include either oauthToken OR username+password")

    if has_token and has_basic:
        raise InputError("AAP credentials should have either oauthToken OR username+password, not both")

    return "oauth-token" if has_token else "basic"


def validate_llm_credentials(llm_env: Dict[str, str]) -> str:
    """
    Enforce (AWS_ACCESS_KEY_ID AND AWS_SECRET_ACCESS_KEY) XOR AWS_BEARER_TOKEN_BEDROCK.

    Returns:
        Auth method: "access-key" or "bearer-token"
    """
    has_key_id = bool(llm_env.get("AWS_ACCESS_KEY_ID"))
    has_secret = bool(llm_env.get("AWS_SECRET_ACCESS_KEY"))
    has_bearer = bool(llm_env.get("AWS_BEARER_TOKEN_BEDROCK"))

    if has_key_id != has_secret:
        raise InputError(
            "LLM credentials must include both AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY"
        )

    has_access_key = has_key_id and has_secret

    if not has_access_key and not has_bearer:
        raise InputError(
            "LLM credentials must include either "
            "AWS_ACCESS_KEY_ID+AWS_SECRET_ACCESS_KEY OR AWS_BEARER_TOKEN_BEDROCK"
        )

    if has_access_key and has_bearer:
        raise InputError(
            "LLM credentials should have either "
            "AWS_ACCESS_KEY_ID+AWS_SECRET_ACCESS_KEY OR AWS_BEARER_TOKEN_BEDROCK, not both"
        )

    return "access-key" if has_access_key else "bearer-token"


def validate_run_credentials(
    aap_credentials: Optional[AAPCredentials],
    settings: Settings
) -> None:
    """Check LLM and AAP credentials for a run before anything is persisted."""
    validate_llm_credentials(settings.llm_env)
    aap, _ = resolve_aap_credentials(aap_credentials, settings)
    validate_aap_credentials(aap)


# =============================================================================
# Secrets
# =============================================================================

def build_project_secret(
    project_id: str,
    aap_credentials: Optional[AAPCredentials],
    settings: Settings
) -> client.V1Secret:
    """
    Build the long-lived project Secret (LLM + AAP, no git credentials).

    Args:
        project_id: Project UUID
        aap_credentials: Optional user-supplied AAP credentials (override config)
        settings: Service settings (LLM passthrough + system AAP credentials)

    Returns:
        V1Secret manifest
    """
    llm_env = settings.llm_env
    validate_llm_credentials(llm_env)

    aap, aap_source = resolve_aap_credentials(aap_credentials, settings)
    auth_method = validate_aap_credentials(aap)

    aap_env = {
        "AAP_CONTROLLER_URL": aap.url,
        "AAP_ORG_NAME": aap.orgName,
    }
    if auth_method == "oauth-token":
        aap_env["AAP_OAUTH_TOKEN"] = aap.oauthToken
    else:
        aap_env["AAP_USERNAME"] = aap.username
        aap_env["AAP_PASSWORD"] = aap.password

    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=project_secret_name(project_id),
            labels={
                "app.kubernetes.io/name": "x2a-project-secret",
                "app.kubernetes.io/component": "credentials",
                "app.kubernetes.io/managed-by": MANAGED_BY,
                f"{LABEL_PREFIX}/project-id": str(project_id),
            },
            annotations={
                f"{LABEL_PREFIX}/created-by": MANAGED_BY,
                f"{LABEL_PREFIX}/description": "Long-lived credentials for X2A migration project (LLM + AAP)",
                f"{LABEL_PREFIX}/aap-auth-method": auth_method,
                f"{LABEL_PREFIX}/aap-source": aap_source,
                f"{LABEL_PREFIX}/secret-type": "project",
            },
        ),
        type="Opaque",
        string_data={**llm_env, **aap_env},
    )


def build_job_secret(
    job_id: str,
    project_id: str,
    source_repo: GitRepoCredentials,
    target_repo: GitRepoCredentials
) -> client.V1Secret:
    """Build the per-job Secret holding only git clone credentials."""
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=job_secret_name(job_id),
            labels={
                "app.kubernetes.io/name": "x2a-job-secret",
                "app.kubernetes.io/component": "credentials",
                "app.kubernetes.io/managed-by": MANAGED_BY,
                f"{LABEL_PREFIX}/job-id": str(job_id),
                f"{LABEL_PREFIX}/project-id": str(project_id),
                f"{LABEL_PREFIX}/secret-type": "job",
            },
            annotations={
                f"{LABEL_PREFIX}/created-by": MANAGED_BY,
                f"{LABEL_PREFIX}/description": "Ephemeral Git credentials for X2A job (deleted with the job)",
            },
        ),
        type="Opaque",
        string_data={
            "SOURCE_REPO_URL": source_repo.url,
            "SOURCE_REPO_TOKEN": source_repo.token,
            "SOURCE_REPO_BRANCH": source_repo.branch,
            "TARGET_REPO_URL": target_repo.url,
            "TARGET_REPO_TOKEN": target_repo.token,
            "TARGET_REPO_BRANCH": target_repo.branch,
        },
    )


# =============================================================================
# Repository Preparation Script (init container)
# =============================================================================

def generate_prepare_repositories_script(
    git_author_name: str,
    git_author_email: str
) -> str:
    """
    Generate the init container script that prepares /workspace.

    Repository URLs, branches and tokens are read from the job Secret
    environment, never baked into the script. The target branch is cloned
    when it exists on the remote; otherwise an empty repository is
    initialized on that branch with the remote configured.

    Returns:
        Shell script as string
    """
    author_name = shlex.quote(git_author_name)
    author_email = shlex.quote(git_author_email)

    return f'''#!/bin/sh
set -e

auth_url() {{
    # $1 = repository URL, $2 = token
    case "$1" in
        https://*) printf '%s\\n' "https://x-access-token:$2@${{1#https://}}" ;;
        *) printf '%s\\n' "$1" ;;
    esac
}}

echo "[PREPARE] ======================================"
echo "[PREPARE] Source: $SOURCE_REPO_URL ($SOURCE_REPO_BRANCH)"
echo "[PREPARE] Target: $TARGET_REPO_URL ($TARGET_REPO_BRANCH)"
echo "[PREPARE] ======================================"

git config --global user.name {author_name}
git config --global user.email {author_email}
git config --global init.defaultBranch "$TARGET_REPO_BRANCH"

SOURCE_AUTH_URL=$(auth_url "$SOURCE_REPO_URL" "$SOURCE_REPO_TOKEN")
TARGET_AUTH_URL=$(auth_url "$TARGET_REPO_URL" "$TARGET_REPO_TOKEN")

rm -rf {SOURCE_DIR} {TARGET_DIR}

git clone --depth 1 --branch "$SOURCE_REPO_BRANCH" --single-branch "$SOURCE_AUTH_URL" {SOURCE_DIR}

if git ls-remote --exit-code --heads "$TARGET_AUTH_URL" "$TARGET_REPO_BRANCH" > /dev/null 2>&1; then
    echo "[PREPARE] Target branch exists, cloning"
    git clone --branch "$TARGET_REPO_BRANCH" --single-branch "$TARGET_AUTH_URL" {TARGET_DIR}
else
    echo "[PREPARE] Target branch not found, initializing empty repository"
    mkdir -p {TARGET_DIR}
    cd {TARGET_DIR}
    git init -b "$TARGET_REPO_BRANCH"
    git remote add origin "$TARGET_AUTH_URL"
fi

echo "[PREPARE] ✅ Repositories ready"
'''


# =============================================================================
# Job
# =============================================================================

def build_command(params: JobCreateParams) -> List[str]:
    """
    Build the x2a CLI invocation for a phase.

    A user prompt replaces the module-name positional argument for
    analyze/migrate; init takes the prompt as its only positional argument.

    Raises:
        InputError: module phases without a module name, or an unknown phase
    """
    phase = MigrationPhase(params.phase)

    if phase == MigrationPhase.INIT:
        command = ["x2a", "init", "--source-dir", SOURCE_DIR]
        if params.user_prompt:
            command.append(params.user_prompt)
        return command

    if not params.module_name:
        raise InputError(f"moduleName is required for {phase.value} phase")

    target = params.user_prompt or params.module_name

    if phase == MigrationPhase.ANALYZE:
        return ["x2a", "analyze", "--source-dir", SOURCE_DIR, target]

    if phase == MigrationPhase.MIGRATE:
        return [
            "x2a", "migrate",
            "--source-dir", SOURCE_DIR,
            "--source-technology", SOURCE_TECHNOLOGY,
            "--high-level-migration-plan", f"{TARGET_DIR}/migration-plan.md",
            "--module-migration-plan", f"{TARGET_DIR}/modules/{params.module_name}/migration-plan.md",
            "--target-dir", TARGET_DIR,
            target,
        ]

    return ["x2a", "publish", "--target-dir", TARGET_DIR, params.module_name]


def _job_env(params: JobCreateParams) -> List[client.V1EnvVar]:
    env = {
        "PHASE": MigrationPhase(params.phase).value,
        "PROJECT_ID": str(params.project_id),
        "PROJECT_NAME": params.project_name,
        "PROJECT_ABBREV": params.project_abbreviation,
        "JOB_ID": str(params.job_id),
        "USER": params.user,
        "CALLBACK_URL": params.callback_url,
        "CALLBACK_TOKEN": params.callback_token,
        "SOURCE_DIR": SOURCE_DIR,
        "TARGET_DIR": TARGET_DIR,
    }
    if params.module_id:
        env["MODULE_ID"] = str(params.module_id)
    if params.module_name:
        env["MODULE_NAME"] = params.module_name
    if params.user_prompt:
        env["USER_PROMPT"] = params.user_prompt

    return [client.V1EnvVar(name=name, value=value) for name, value in env.items()]


def build_job_spec(params: JobCreateParams, settings: Settings) -> client.V1Job:
    """
    Build the Kubernetes Job for one phase run.

    Args:
        params: Job identity, project/module metadata and callback correlation
        settings: Image, TTL and resource settings

    Returns:
        V1Job manifest with a freshly generated name
    """
    command = build_command(params)
    job_name = generate_job_name(params.phase)
    labels = get_job_labels(params)

    workspace_mount = client.V1VolumeMount(name=WORKSPACE_VOLUME, mount_path=WORKSPACE_DIR)
    job_secret_ref = client.V1EnvFromSource(
        secret_ref=client.V1SecretEnvSource(name=job_secret_name(params.job_id))
    )
    project_secret_ref = client.V1EnvFromSource(
        secret_ref=client.V1SecretEnvSource(name=project_secret_name(params.project_id))
    )

    init_container = client.V1Container(
        name="prepare-repositories",
        image=settings.image,
        image_pull_policy=settings.k8s_image_pull_policy,
        command=["/bin/sh", "-c"],
        args=[generate_prepare_repositories_script(
            settings.git_author_name,
            settings.git_author_email,
        )],
        env_from=[job_secret_ref],
        volume_mounts=[workspace_mount],
    )

    main_container = client.V1Container(
        name="x2a-convertor",
        image=settings.image,
        image_pull_policy=settings.k8s_image_pull_policy,
        command=command,
        working_dir=WORKSPACE_DIR,
        env_from=[project_secret_ref, job_secret_ref],
        env=_job_env(params),
        volume_mounts=[workspace_mount],
        resources=client.V1ResourceRequirements(
            requests={
                "cpu": settings.k8s_cpu_request,
                "memory": settings.k8s_memory_request,
            },
            limits={
                "cpu": settings.k8s_cpu_limit,
                "memory": settings.k8s_memory_limit,
            },
        ),
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            labels=labels,
            annotations={
                f"{LABEL_PREFIX}/created-by": MANAGED_BY,
                f"{LABEL_PREFIX}/callback-url": params.callback_url,
            },
        ),
        spec=client.V1JobSpec(
            backoff_limit=JOB_BACKOFF_LIMIT,
            ttl_seconds_after_finished=settings.k8s_ttl_seconds_after_finished,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(
                    labels={
                        "app.kubernetes.io/name": "x2a-job",
                        f"{LABEL_PREFIX}/project-id": str(params.project_id),
                        f"{LABEL_PREFIX}/phase": MigrationPhase(params.phase).value,
                        f"{LABEL_PREFIX}/job-id": str(params.job_id),
                    }
                ),
                spec=client.V1PodSpec(
                    restart_policy="Never",
                    init_containers=[init_container],
                    containers=[main_container],
                    volumes=[
                        client.V1Volume(
                            name=WORKSPACE_VOLUME,
                            empty_dir=client.V1EmptyDirVolumeSource(),
                        )
                    ],
                ),
            ),
        ),
    )
