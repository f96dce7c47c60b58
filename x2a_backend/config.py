from pydantic_settings import BaseSettings
from pydantic import BaseModel
from functools import lru_cache
from typing import Dict, Optional


DEFAULT_LLM_MODEL = "anthropic.claude-sonnet-4"


class AAPCredentials(BaseModel):
    """Ansible Automation Platform connection and auth (token OR basic)."""
    url: str
    orgName: str
    oauthToken: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class Settings(BaseSettings):
    # Database - PostgreSQL in production, SQLite for tests
    database_url: str

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # Externally reachable base URL of this service.
    # Jobs running in the cluster POST their results to {x2a_base_url}/projects/...
    x2a_base_url: str = "http://localhost:7007/api/x2a"

    # ==========================================================================
    # Kubernetes Job Settings
    # ==========================================================================
    k8s_namespace: str = "x2a"
    k8s_image: str = "quay.io/x2ansible/x2a-convertor"
    k8s_image_tag: str = "latest"
    k8s_image_pull_policy: str = "IfNotPresent"
    k8s_ttl_seconds_after_finished: int = 86400  # Finished jobs are garbage-collected after a day

    # Resource requests/limits for the migration container
    k8s_cpu_request: str = "500m"
    k8s_memory_request: str = "1Gi"
    k8s_cpu_limit: str = "2000m"
    k8s_memory_limit: str = "4Gi"

    # Live log streams end after this many seconds without output (client reconnects)
    k8s_log_stream_idle_timeout_seconds: int = 300

    # ==========================================================================
    # Git Settings
    # ==========================================================================
    git_author_name: str = "X2A Convertor"
    git_author_email: str = "x2a@redhat.com"

    # Fallback tokens when a run request does not carry repository auth
    git_source_repo_token: str = ""
    git_target_repo_token: str = ""

    # ==========================================================================
    # Credentials copied into the long-lived project secret
    # ==========================================================================
    # Opaque env vars for the LLM provider, e.g. {"AWS_REGION": "us-east-1", ...}
    # Set via LLM_CREDENTIALS='{"AWS_ACCESS_KEY_ID": "...", ...}'
    llm_credentials: Dict[str, str] = {}

    # System-wide AAP credentials (user-supplied credentials take precedence)
    aap_url: str = ""
    aap_org_name: str = ""
    aap_oauth_token: str = ""
    aap_username: str = ""
    aap_password: str = ""

    # ==========================================================================
    # Access control
    # ==========================================================================
    # Comma-separated caller identities that may view and modify all projects
    admin_users: str = ""

    # Reject job callbacks that do not carry an X-Callback-Signature header
    callback_signature_required: bool = False

    @property
    def image(self) -> str:
        """Full image reference for job containers."""
        return f"{self.k8s_image}:{self.k8s_image_tag}"

    @property
    def llm_env(self) -> Dict[str, str]:
        """LLM credentials with LLM_MODEL defaulted."""
        env = dict(self.llm_credentials)
        if not env.get("LLM_MODEL"):
            env["LLM_MODEL"] = DEFAULT_LLM_MODEL
        return env

    @property
    def aap_credentials(self) -> Optional[AAPCredentials]:
        """System AAP credentials, or None when nothing is configured."""
        if not any([self.aap_url, self.aap_org_name, self.aap_oauth_token,
                    self.aap_username, self.aap_password]):
            return None
        return AAPCredentials(
            url=self.aap_url,
            orgName=self.aap_org_name,
            oauthToken=self.aap_oauth_token or None,
            username=self.aap_username or None,
            password=self.aap_password or None,
        )

    @property
    def admin_user_set(self) -> set:
        return {u.strip() for u in self.admin_users.split(",") if u.strip()}

    def validate_required(self) -> None:
        """Fail fast at boot when settings needed to build jobs are missing."""
        from .errors import ConfigurationError

        if not self.k8s_namespace:
            raise ConfigurationError("X2A configuration error: k8s_namespace is required")
        if not self.k8s_image:
            raise ConfigurationError("X2A configuration error: k8s_image is required")

    class Config:
        # Environment variables are passed directly in the cluster;
        # for local development a .env file in the working directory is read
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()
