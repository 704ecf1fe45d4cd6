"""
Directive Model

Typed representation of one idempotent configuration action plus its
guard, tags and policies. Pure data: no host access happens here.

A directive's body is one of a closed set of action kinds. In YAML the
kind is written as the key holding the body:

    - id: sshd-disable-password-auth
      tags: [security, ssh]
      risk_class: lockout_risk
      validator: /usr/sbin/sshd -t -f %s
      lineinfile:
        path: /etc/ssh/sshd_config
        lines:
          - {regexp: '^#?PasswordAuthentication.*', line: 'PasswordAuthentication no'}
      notifies: [restart-ssh]
"""

from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, FrozenSet, Literal, Optional, Tuple, Union
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import RenderError
from .rendering import RunContext, evaluate_guard


class RiskClass(str, Enum):
    """Whether a misapplied directive can lock the operator out."""
    SAFE = "safe"
    LOCKOUT_RISK = "lockout_risk"


class FailurePolicy(str, Enum):
    """How a failed action is classified."""
    FATAL = "fatal"
    IGNORED = "ignored"
    CUSTOM_PREDICATE = "custom_predicate"


class ChangePolicy(str, Enum):
    """How the "changed" flag is decided (drives handler notification)."""
    ALWAYS_CHANGED = "always_changed"
    DETECT_BY_OUTPUT = "detect_by_output"
    NEVER_CHANGED = "never_changed"


def _as_tuple(value: Any) -> Any:
    if isinstance(value, str):
        return (value,)
    return value


class SuccessPredicate(BaseModel):
    """Directive-supplied success test over captured command output."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    rc_in: Tuple[int, ...] = (0,)
    stdout_contains: Optional[str] = None
    stdout_regex: Optional[str] = None
    stderr_not_contains: Optional[str] = None
    fatal: bool = True

    @field_validator("rc_in", mode="before")
    @classmethod
    def _single_rc(cls, value: Any) -> Any:
        return (value,) if isinstance(value, int) else value

    def matches(self, result) -> bool:
        if getattr(result, "timed_out", False):
            return False
        if result.exit_code not in self.rc_in:
            return False
        if self.stdout_contains is not None and self.stdout_contains not in result.stdout:
            return False
        if self.stdout_regex is not None and not re.search(self.stdout_regex, result.stdout, re.MULTILINE):
            return False
        if self.stderr_not_contains is not None and self.stderr_not_contains in result.stderr:
            return False
        return True


# ==================== Action Bodies ====================

class _Body(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    produces_file: ClassVar[bool] = False


class CommandBody(_Body):
    """Run a shell command. `creates`/`unless` make it idempotent."""
    kind: Literal["command"] = "command"
    cmd: str
    creates: Optional[str] = None
    unless: Optional[str] = None
    changed_regex: Optional[str] = None


class ProbeBody(_Body):
    """Read-only command. Never mutates, never fails on its own."""
    kind: Literal["probe"] = "probe"
    cmd: str


class FileBody(_Body):
    kind: Literal["file"] = "file"
    path: str
    state: Literal["file", "directory", "absent"] = "file"
    content: Optional[str] = None
    mode: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    backup: bool = False

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_as_string(cls, value: Any) -> Any:
        # YAML 1.1 reads an unquoted 0644 as the octal integer 420
        return format(value, "04o") if isinstance(value, int) else value

    @property
    def writes_content(self) -> bool:
        return self.state == "file" and self.content is not None


class LineRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    line: str
    regexp: Optional[str] = None


class LineInFileBody(_Body):
    """Ensure lines are present (replacing regexp matches) or absent."""
    kind: Literal["lineinfile"] = "lineinfile"
    path: str
    lines: Tuple[LineRule, ...] = Field(min_length=1)
    state: Literal["present", "absent"] = "present"
    create: bool = False
    mode: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    backup: bool = True

    produces_file: ClassVar[bool] = True

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_as_string(cls, value: Any) -> Any:
        return format(value, "04o") if isinstance(value, int) else value


class SysctlBody(_Body):
    """Persist kernel parameters to a sysctl.d file and load them."""
    kind: Literal["sysctl"] = "sysctl"
    params: Dict[str, str] = Field(min_length=1)
    sysctl_file: str = "/etc/sysctl.d/99-converge.conf"
    reload: bool = True

    produces_file: ClassVar[bool] = True

    @field_validator("params", mode="before")
    @classmethod
    def _values_as_strings(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value


class ServiceBody(_Body):
    kind: Literal["service"] = "service"
    name: str
    state: Optional[Literal["started", "stopped", "restarted", "reloaded"]] = None
    enabled: Optional[bool] = None
    daemon_reload: bool = False


class PackageBody(_Body):
    kind: Literal["package"] = "package"
    names: Tuple[str, ...] = Field(min_length=1)
    state: Literal["present", "absent"] = "present"
    update_cache: bool = False
    autoremove: bool = False

    @field_validator("names", mode="before")
    @classmethod
    def _single_name(cls, value: Any) -> Any:
        return _as_tuple(value)


class UserBody(_Body):
    kind: Literal["user"] = "user"
    name: str
    shell: Optional[str] = None
    groups: Tuple[str, ...] = ()
    append: bool = True
    create_home: bool = True
    lock_password: bool = True

    @field_validator("groups", mode="before")
    @classmethod
    def _single_group(cls, value: Any) -> Any:
        return _as_tuple(value)


class AssertBody(_Body):
    """Fail unless every guard expression holds. Never touches the host."""
    kind: Literal["assert"] = "assert"
    that: Tuple[str, ...] = Field(min_length=1)
    msg: Optional[str] = None

    @field_validator("that", mode="before")
    @classmethod
    def _single_expression(cls, value: Any) -> Any:
        return _as_tuple(value)


ActionBody = Annotated[
    Union[
        CommandBody,
        ProbeBody,
        FileBody,
        LineInFileBody,
        SysctlBody,
        ServiceBody,
        PackageBody,
        UserBody,
        AssertBody,
    ],
    Field(discriminator="kind")
]

# A body whose templates have been rendered against a RunContext
ConcreteAction = ActionBody

BODY_KINDS = {
    "command": CommandBody,
    "probe": ProbeBody,
    "file": FileBody,
    "lineinfile": LineInFileBody,
    "sysctl": SysctlBody,
    "service": ServiceBody,
    "package": PackageBody,
    "user": UserBody,
    "assert": AssertBody,
}


def body_produces_file(body) -> bool:
    if isinstance(body, FileBody):
        return body.writes_content
    return body.produces_file


def _lift_body(data: Any) -> Any:
    """Accept `<kind>: {...}` as shorthand for `body: {kind: <kind>, ...}`."""
    if not isinstance(data, dict) or "body" in data:
        return data
    kinds = [key for key in data if key in BODY_KINDS]
    if len(kinds) > 1:
        raise ValueError(f"Only one action kind allowed, got {sorted(kinds)}")
    if not kinds:
        return data
    data = dict(data)
    kind = kinds[0]
    params = data.pop(kind)
    if isinstance(params, str) and kind in ("command", "probe"):
        params = {"cmd": params}
    data["body"] = {"kind": kind, **(params or {})}
    return data


def render_body(body, context: RunContext):
    """Render every template in a body against the run context."""
    rendered = context.render(body.model_dump(mode="python"))
    try:
        return type(body).model_validate(rendered)
    except ValueError as e:
        raise RenderError(f"Rendered {body.kind} body is invalid: {e}")


# ==================== Directive / Handler ====================

class Directive(BaseModel):
    """
    One declared, idempotent configuration action.

    Identity (`id`) is unique within a run. Execution order is declaration
    order filtered by tags and is never inferred.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    name: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    when: Optional[str] = None
    body: ActionBody
    validator: Optional[str] = None
    risk_class: RiskClass = RiskClass.SAFE
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    success_when: Optional[SuccessPredicate] = None
    change_policy: ChangePolicy = ChangePolicy.DETECT_BY_OUTPUT
    notifies: Tuple[str, ...] = ()
    timeout: Optional[float] = Field(None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _shorthand_body(cls, data: Any) -> Any:
        return _lift_body(data)

    @field_validator("tags", "notifies", mode="before")
    @classmethod
    def _single_string(cls, value: Any) -> Any:
        return _as_tuple(value)

    @field_validator("when", mode="before")
    @classmethod
    def _bool_guard(cls, value: Any) -> Any:
        # `when: false` in YAML arrives as a bool
        if isinstance(value, bool):
            return "true" if value else "false"
        return value

    @model_validator(mode="after")
    def _check_policies(self) -> "Directive":
        if self.validator is not None and "%s" not in self.validator:
            raise ValueError(
                f"Directive '{self.id}': validator must reference the staged file as %s"
            )
        if self.validator is not None and not body_produces_file(self.body):
            raise ValueError(
                f"Directive '{self.id}': validator requires a file-producing body, "
                f"got '{self.body.kind}'"
            )
        if self.risk_class == RiskClass.LOCKOUT_RISK:
            if self.validator is None:
                raise ValueError(
                    f"Directive '{self.id}': lockout_risk directives must declare a validator"
                )
        if self.failure_policy == FailurePolicy.CUSTOM_PREDICATE and self.success_when is None:
            raise ValueError(
                f"Directive '{self.id}': custom_predicate requires success_when"
            )
        return self

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def is_probe(self) -> bool:
        return self.body.kind == "probe"

    @property
    def requires_gate(self) -> bool:
        """Lockout-risk directives always pass the gate; others opt in via validator."""
        return self.risk_class == RiskClass.LOCKOUT_RISK or self.validator is not None

    def evaluate_guard(self, context: RunContext) -> bool:
        return evaluate_guard(self.when, context)

    def render(self, context: RunContext) -> ConcreteAction:
        return render_body(self.body, context)

    def render_validator(self, context: RunContext) -> Optional[str]:
        if self.validator is None:
            return None
        return context.render(self.validator)


class Handler(BaseModel):
    """Named, idempotent activation action fired at most once per run."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    body: ActionBody
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    timeout: Optional[float] = Field(None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _shorthand_body(cls, data: Any) -> Any:
        return _lift_body(data)

    @field_validator("failure_policy")
    @classmethod
    def _no_predicate(cls, value: FailurePolicy) -> FailurePolicy:
        if value == FailurePolicy.CUSTOM_PREDICATE:
            raise ValueError("Handlers support only fatal or ignored failure policies")
        return value

    def render(self, context: RunContext) -> ConcreteAction:
        return render_body(self.body, context)
