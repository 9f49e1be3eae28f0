"""Data models for join credentials and RBAC grants."""

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JoinCredential(BaseModel):
    """Credentials a worker needs to enroll with the control plane.

    The token is kept in a SecretStr so it never shows up in reprs or logs.
    """

    model_config = ConfigDict(frozen=True)

    token: SecretStr
    ca_cert_hash: str
    endpoint: str
    issued_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @field_validator("ca_cert_hash")
    @classmethod
    def validate_ca_cert_hash(cls, v: str) -> str:
        """Validate the discovery hash uses the sha256:<hex> form."""
        if not v.startswith("sha256:") or len(v) <= len("sha256:"):
            raise ValueError(f"ca_cert_hash must look like 'sha256:<hex>', got '{v}'")
        return v

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Validate endpoint is host:port."""
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"endpoint must be 'host:port', got '{v}'")
        return v

    def is_expired(self, now: datetime | None = None, margin: timedelta = timedelta(0)) -> bool:
        """Return True if the token is expired or will be within margin."""
        now = now or utcnow()
        return now + margin >= self.expires_at

    def join_arguments(self) -> list[str]:
        """Arguments for `kubeadm join`, including the plaintext token."""
        return [
            self.endpoint,
            "--token",
            self.token.get_secret_value(),
            "--discovery-token-ca-cert-hash",
            self.ca_cert_hash,
        ]


class PolicyRule(BaseModel):
    """One namespaced RBAC rule: apiGroups x resources x verbs.

    resource_names optionally narrows the rule to named objects. Verbs are not
    restricted to the built-in set, since API extensions define their own
    (bind, escalate, impersonate, use, approve, ...).
    """

    api_groups: list[str] = Field(default_factory=lambda: [""])
    resources: list[str]
    verbs: list[str]
    resource_names: list[str] = Field(default_factory=list)

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("resources cannot be empty")
        return v

    @field_validator("verbs")
    @classmethod
    def validate_verbs(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("verbs cannot be empty")
        malformed = [verb for verb in v if not verb or any(c.isspace() for c in verb)]
        if malformed:
            raise ValueError(f"verbs must be single words, got {malformed}")
        return v

    def to_manifest(self) -> dict:
        """Convert to the Role manifest rule format."""
        rule = {
            "apiGroups": list(self.api_groups),
            "resources": list(self.resources),
            "verbs": list(self.verbs),
        }
        if self.resource_names:
            rule["resourceNames"] = list(self.resource_names)
        return rule

    @classmethod
    def from_manifest(cls, data: dict) -> "PolicyRule":
        """Parse a Role rule.

        Raises:
            ValueError: If the rule is invalid or uses nonResourceURLs, which
                only a ClusterRole may grant
        """
        if data.get("nonResourceURLs"):
            raise ValueError(
                f"nonResourceURLs {data['nonResourceURLs']} are not valid in a namespaced Role"
            )
        return cls(
            api_groups=data.get("apiGroups") or [""],
            resources=data.get("resources") or [],
            verbs=data.get("verbs") or [],
            resource_names=data.get("resourceNames") or [],
        )


# Default grant for a CI/CD deployer account.
DEFAULT_CICD_RULES = [
    PolicyRule(
        api_groups=[
            "",
            "apps",
            "autoscaling",
            "batch",
            "extensions",
            "policy",
            "networking.k8s.io",
        ],
        resources=[
            "componentstatuses",
            "configmaps",
            "daemonsets",
            "deployments",
            "events",
            "endpoints",
            "horizontalpodautoscalers",
            "ingresses",
            "jobs",
            "limitranges",
            "namespaces",
            "nodes",
            "pods",
            "persistentvolumes",
            "persistentvolumeclaims",
            "resourcequotas",
            "replicasets",
            "replicationcontrollers",
            "serviceaccounts",
            "services",
        ],
        verbs=["get", "list", "watch", "create", "update", "patch", "delete"],
    )
]


class ServiceAccountGrant(BaseModel):
    """A namespaced service account bound to a role, with its bearer token."""

    namespace: str
    account: str
    role: str
    binding: str
    secret: str
    rules: list[PolicyRule]
    token: SecretStr | None = None
