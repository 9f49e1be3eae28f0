"""Namespaced service account provisioning with RBAC.

The chain is strictly ordered: namespace, service account, role, role binding,
token secret and finally the token itself. Each link's postcondition is the
next link's precondition, and a broken link is reported by name.
"""

import base64
import binascii
import json
from collections.abc import Callable
from dataclasses import dataclass

import yaml
from pydantic import SecretStr

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import (
    ClusterBootstrapError,
    ConflictError,
    FatalError,
    OperationAbortedError,
    TransientError,
)
from cluster_bootstrap.executor import CommandExecutor
from cluster_bootstrap.guard import (
    GuardCheck,
    GuardedStep,
    GuardState,
    IdempotencyGuard,
    Precondition,
)
from cluster_bootstrap.initializer import kubectl
from cluster_bootstrap.logging_config import get_logger, register_secret
from cluster_bootstrap.models.credentials import (
    DEFAULT_CICD_RULES,
    PolicyRule,
    ServiceAccountGrant,
)
from cluster_bootstrap.models.results import CommandResult, RunReport, StepOutcome, StepResult
from cluster_bootstrap.registry import NodeRegistry

logger = get_logger(__name__)

RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"
SA_NAME_ANNOTATION = "kubernetes.io/service-account.name"
SA_TOKEN_TYPE = "kubernetes.io/service-account-token"

STEP_NAMESPACE = "namespace"
STEP_SERVICE_ACCOUNT = "service-account"
STEP_ROLE = "role"
STEP_ROLE_BINDING = "role-binding"
STEP_TOKEN_SECRET = "token-secret"
STEP_TOKEN = "token"

CHAIN = (
    STEP_NAMESPACE,
    STEP_SERVICE_ACCOUNT,
    STEP_ROLE,
    STEP_ROLE_BINDING,
    STEP_TOKEN_SECRET,
    STEP_TOKEN,
)


def render_manifest(manifest: dict) -> str:
    return yaml.safe_dump(manifest, sort_keys=False, default_flow_style=False)


def apply_command(config: BootstrapConfig, manifest: dict) -> str:
    """kubectl apply of a manifest fed through a heredoc."""
    return kubectl(config, f"apply -f - <<'EOF'\n{render_manifest(manifest)}EOF")


def namespace_manifest(namespace: str) -> dict:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}


def service_account_manifest(namespace: str, account: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": account, "namespace": namespace},
    }


def role_manifest(namespace: str, role: str, rules: list[PolicyRule]) -> dict:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "Role",
        "metadata": {"name": role, "namespace": namespace},
        "rules": [rule.to_manifest() for rule in rules],
    }


def role_binding_manifest(namespace: str, binding: str, role: str, account: str) -> dict:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "RoleBinding",
        "metadata": {"name": binding, "namespace": namespace},
        "subjects": [{"kind": "ServiceAccount", "name": account, "namespace": namespace}],
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": role},
    }


def token_secret_manifest(namespace: str, secret: str, account: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": SA_TOKEN_TYPE,
        "metadata": {
            "name": secret,
            "namespace": namespace,
            "annotations": {SA_NAME_ANNOTATION: account},
        },
    }


def normalize_rules(rules: list[PolicyRule]) -> list[tuple]:
    """Order-insensitive form of a rule set, for comparison."""
    return sorted(
        (
            tuple(sorted(r.api_groups)),
            tuple(sorted(r.resources)),
            tuple(sorted(r.verbs)),
            tuple(sorted(r.resource_names)),
        )
        for r in rules
    )


@dataclass(frozen=True)
class ObjectPrecondition(Precondition):
    """An API object exists and, optionally, has the expected shape.

    The probe prints the object as JSON. mismatch returns a description of how
    an existing object differs from what is expected, or None if it matches.
    """

    mismatch: Callable[[dict], str | None] | None = None

    def evaluate(self, result: CommandResult) -> GuardCheck:
        if result.exit_code != 0:
            return GuardCheck(GuardState.UNSATISFIED, f"{self.name} does not exist")
        if self.mismatch is None:
            return GuardCheck(GuardState.SATISFIED)
        try:
            obj = json.loads(result.stdout)
        except json.JSONDecodeError:
            return GuardCheck(GuardState.CONFLICT, f"{self.name} returned unreadable JSON")
        problem = self.mismatch(obj)
        if problem:
            return GuardCheck(GuardState.CONFLICT, problem)
        return GuardCheck(GuardState.SATISFIED)


class RBACProvisioner:
    """Creates a service account bound to a namespaced role and fetches its token."""

    def __init__(
        self,
        config: BootstrapConfig,
        executor: CommandExecutor,
        registry: NodeRegistry,
        report: RunReport,
        guard: IdempotencyGuard | None = None,
    ):
        self.config = config
        self.executor = executor
        self.registry = registry
        self.report = report
        self.guard = guard or IdempotencyGuard(executor)

    def grant_for(
        self,
        namespace: str,
        account: str,
        rules: list[PolicyRule] | None = None,
        role_name: str | None = None,
    ) -> ServiceAccountGrant:
        """Describe the objects a grant consists of, without touching the cluster."""
        return ServiceAccountGrant(
            namespace=namespace,
            account=account,
            role=role_name or f"{account}-role",
            binding=f"{account}-binding",
            secret=f"{account}-token",
            rules=list(rules or DEFAULT_CICD_RULES),
        )

    def _get(self, kind: str, name: str, namespace: str | None = None) -> str:
        scope = f" -n {namespace}" if namespace else ""
        return kubectl(self.config, f"get {kind} {name}{scope} -o json")

    def chain(self, grant: ServiceAccountGrant) -> list[GuardedStep]:
        """The guarded steps that create every object of a grant, in order."""
        ns = grant.namespace
        expected_rules = normalize_rules(grant.rules)

        def role_mismatch(obj: dict) -> str | None:
            try:
                found = [PolicyRule.from_manifest(r) for r in obj.get("rules") or []]
            except ValueError as e:
                return f"role {grant.role} has rules that cannot be read: {e}"
            if normalize_rules(found) != expected_rules:
                return f"role {grant.role} exists with a different rule set"
            return None

        def binding_mismatch(obj: dict) -> str | None:
            ref = obj.get("roleRef") or {}
            if ref.get("kind") != "Role" or ref.get("name") != grant.role:
                return (
                    f"binding {grant.binding} points to {ref.get('kind')}/{ref.get('name')}, "
                    f"not Role/{grant.role}"
                )
            for subject in obj.get("subjects") or []:
                if (
                    subject.get("kind") == "ServiceAccount"
                    and subject.get("name") == grant.account
                    and subject.get("namespace", ns) == ns
                ):
                    return None
            return f"binding {grant.binding} does not include service account {grant.account}"

        def secret_mismatch(obj: dict) -> str | None:
            if obj.get("type") != SA_TOKEN_TYPE:
                return f"secret {grant.secret} has type {obj.get('type')}, not {SA_TOKEN_TYPE}"
            owner = (obj.get("metadata", {}).get("annotations") or {}).get(SA_NAME_ANNOTATION)
            if owner != grant.account:
                return f"secret {grant.secret} is annotated to account '{owner}'"
            return None

        return [
            GuardedStep(
                name=STEP_NAMESPACE,
                preconditions=(
                    ObjectPrecondition(f"namespace {ns}", self._get("namespace", ns)),
                ),
                actions=(apply_command(self.config, namespace_manifest(ns)),),
            ),
            GuardedStep(
                name=STEP_SERVICE_ACCOUNT,
                preconditions=(
                    ObjectPrecondition(
                        f"service account {grant.account}",
                        self._get("serviceaccount", grant.account, ns),
                    ),
                ),
                actions=(apply_command(self.config, service_account_manifest(ns, grant.account)),),
            ),
            GuardedStep(
                name=STEP_ROLE,
                preconditions=(
                    ObjectPrecondition(
                        f"role {grant.role}",
                        self._get("role", grant.role, ns),
                        mismatch=role_mismatch,
                    ),
                ),
                actions=(apply_command(self.config, role_manifest(ns, grant.role, grant.rules)),),
            ),
            GuardedStep(
                name=STEP_ROLE_BINDING,
                preconditions=(
                    ObjectPrecondition(
                        f"role binding {grant.binding}",
                        self._get("rolebinding", grant.binding, ns),
                        mismatch=binding_mismatch,
                    ),
                ),
                actions=(
                    apply_command(
                        self.config,
                        role_binding_manifest(ns, grant.binding, grant.role, grant.account),
                    ),
                ),
            ),
            GuardedStep(
                name=STEP_TOKEN_SECRET,
                preconditions=(
                    ObjectPrecondition(
                        f"token secret {grant.secret}",
                        self._get("secret", grant.secret, ns),
                        mismatch=secret_mismatch,
                    ),
                ),
                actions=(
                    apply_command(
                        self.config, token_secret_manifest(ns, grant.secret, grant.account)
                    ),
                ),
            ),
        ]

    def _require(self, link: GuardedStep, needed_by: str) -> None:
        check = self.guard.check_all(link.preconditions, self.registry.master)
        if not check.satisfied:
            raise ConflictError(
                f"{needed_by} requires {link.name}, which is missing or broken",
                check.detail,
            )

    def provision(
        self,
        namespace: str,
        account: str,
        rules: list[PolicyRule] | None = None,
        role_name: str | None = None,
    ) -> ServiceAccountGrant:
        """Provision a service account with a namespaced role and return its token.

        Args:
            namespace: Namespace for every object of the grant
            account: Service account name
            rules: Role rules (defaults to the CI/CD deployer rule set)
            role_name: Role name (defaults to "<account>-role")

        Returns:
            The grant, with its token set unless this is a dry run

        Raises:
            ConflictError: If an existing object breaks the chain
            FatalError: If a step fails or the token is never issued
        """
        grant = self.grant_for(namespace, account, rules, role_name)
        master = self.registry.master
        logger.info(f"Provisioning service account {namespace}/{account}")

        step = STEP_NAMESPACE
        previous: tuple[GuardedStep, StepResult] | None = None
        secret_created = False
        try:
            for link in self.chain(grant):
                step = link.name
                # A link applied only in dry-run cannot be observed yet
                if previous is not None and not previous[1].dry_run:
                    self._require(previous[0], link.name)
                result = self.report.record(self.guard.apply(link, master))
                if link.name == STEP_TOKEN_SECRET:
                    secret_created = result.outcome != StepOutcome.SKIPPED
                previous = (link, result)

            step = STEP_TOKEN
            if self.executor.dry_run:
                self.report.record(StepResult.success(STEP_TOKEN, master.hostname, dry_run=True))
                return grant
            token = self.retrieve_token(grant)
        except OperationAbortedError:
            raise
        except ClusterBootstrapError as e:
            self.report.record(StepResult.failed(step, master.hostname, e))
            raise

        if secret_created:
            self.report.record(StepResult.success(STEP_TOKEN, master.hostname))
        else:
            self.report.record(
                StepResult.skipped(STEP_TOKEN, master.hostname, "token already issued")
            )
        return grant.model_copy(update={"token": token})

    def retrieve_token(self, grant: ServiceAccountGrant) -> SecretStr:
        """Read the bearer token of a grant's token secret.

        The role binding and the token secret must already exist; the token
        controller fills the secret asynchronously, so this polls.

        Raises:
            ConflictError: If the role binding or token secret is missing
            FatalError: If the token is not issued within token_timeout
        """
        links = {link.name: link for link in self.chain(grant)}
        self._require(links[STEP_ROLE_BINDING], "token retrieval")
        self._require(links[STEP_TOKEN_SECRET], "token retrieval")

        master = self.registry.master
        command = kubectl(
            self.config,
            f"get secret {grant.secret} -n {grant.namespace} -o jsonpath='{{.data.token}}'",
        )
        token: str | None = None

        def issued() -> bool:
            nonlocal token
            try:
                result = self.executor.query(command, master)
            except TransientError:
                return False
            encoded = result.stdout.strip()
            if result.exit_code != 0 or not encoded:
                return False
            try:
                token = base64.b64decode(encoded, validate=True).decode()
            except (binascii.Error, UnicodeDecodeError) as e:
                raise FatalError(f"Token in secret {grant.secret} is not valid base64", str(e))
            return bool(token)

        timeout = self.config.token_timeout
        if not self.executor.wait_for(issued, timeout):
            raise FatalError(
                "token-not-issued",
                f"secret {grant.namespace}/{grant.secret} had no token after {timeout:.0f}s",
            )
        register_secret(token)
        logger.info(f"Retrieved token for service account {grant.namespace}/{grant.account}")
        return SecretStr(token)
