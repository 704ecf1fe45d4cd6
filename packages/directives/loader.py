"""
Target Loader - YAML target specification -> TargetSpec

A target file declares the desired end-state of a host as an ordered list
of directives plus the handlers they may notify:

    name: Ubuntu 24.04 production VM
    gather_facts: true
    vars:
      new_user: deploy
    allowed_failures: [fail2ban-stop-before-reconfigure]
    directives:
      - id: create-user
        tags: [user, security]
        user: {name: "{{ new_user }}", groups: [sudo]}
    handlers:
      - name: restart-ssh
        command: systemctl restart ssh

Multiple YAML documents (--- separated) are merged in order; directive and
handler lists are concatenated, scalar keys are overridden.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import logging
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .models import Directive, Handler

logger = logging.getLogger(__name__)


class TargetLoadError(Exception):
    """Target file could not be read or does not describe a valid target."""


class TargetSpec(BaseModel):
    """A complete, validated target specification."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "unnamed target"
    vars: Dict[str, Any] = Field(default_factory=dict)
    gather_facts: bool = False
    directives: List[Directive] = Field(default_factory=list)
    handlers: List[Handler] = Field(default_factory=list)
    allowed_failures: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "TargetSpec":
        seen = set()
        for directive in self.directives:
            if directive.id in seen:
                raise ValueError(f"Duplicate directive id: {directive.id}")
            seen.add(directive.id)

        handler_names = set()
        for handler in self.handlers:
            if handler.name in handler_names:
                raise ValueError(f"Duplicate handler name: {handler.name}")
            handler_names.add(handler.name)

        for directive in self.directives:
            unknown = [n for n in directive.notifies if n not in handler_names]
            if unknown:
                raise ValueError(
                    f"Directive '{directive.id}' notifies unknown handler(s): {', '.join(unknown)}"
                )
        return self

    @property
    def handler_map(self) -> Dict[str, Handler]:
        return {h.name: h for h in self.handlers}

    def with_vars(self, extra_vars: Optional[Dict[str, Any]]) -> "TargetSpec":
        """Return a copy whose vars are overridden by extra_vars."""
        if not extra_vars:
            return self
        merged = dict(self.vars)
        merged.update(extra_vars)
        return self.model_copy(update={"vars": merged})


def _merge_documents(documents: List[Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise TargetLoadError("Target document root must be a mapping")
        for key, value in doc.items():
            if key in ("directives", "handlers", "allowed_failures") and key in merged:
                merged[key] = list(merged[key]) + list(value or [])
            elif key == "vars" and key in merged:
                merged[key] = {**merged[key], **(value or {})}
            else:
                merged[key] = value
    return merged


def parse_target(text: str, source: str = "<string>") -> TargetSpec:
    """Parse target YAML text into a TargetSpec."""
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise TargetLoadError(f"{source}: invalid YAML: {e}") from e

    data = _merge_documents(documents)
    try:
        return TargetSpec.model_validate(data)
    except ValidationError as e:
        raise TargetLoadError(f"{source}: invalid target: {e}") from e


def load_target(
    path: Union[str, Path],
    extra_vars: Optional[Dict[str, Any]] = None
) -> TargetSpec:
    """
    Load a target specification from a YAML file.

    Args:
        path: Target file
        extra_vars: Variables overriding the file's vars (CLI -e)

    Returns:
        Validated TargetSpec

    Raises:
        TargetLoadError: If the file is missing, unparsable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise TargetLoadError(f"Target not found: {path}")

    target = parse_target(path.read_text(encoding="utf-8"), source=str(path))
    logger.info(
        f"Loaded target '{target.name}' from {path}: "
        f"{len(target.directives)} directives, {len(target.handlers)} handlers"
    )
    return target.with_vars(extra_vars)
