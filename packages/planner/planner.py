"""
Execution Planner - Tag Filtering over the Declared Directive List

Input:  full ordered directive list + tag include/exclude sets
Output: ordered runnable subset (declaration order preserved)

Rules:
- Exclude always wins: a directive carrying any excluded tag is omitted
- Non-empty include: a directive must carry at least one included tag
- Empty include: every non-excluded directive runs
- No reordering, ever. Operators reason about effects in declaration order.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import logging

from directives import Directive, Handler

logger = logging.getLogger(__name__)


class PlanningError(ValueError):
    """The directive list cannot be planned (duplicate ids, dangling notifies)."""


def _split_tags(raw: Optional[str]) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    return frozenset(t.strip() for t in raw.split(",") if t.strip())


@dataclass(frozen=True)
class TagFilter:
    """Tag inclusion/exclusion filter."""
    include: FrozenSet[str] = frozenset()
    exclude: FrozenSet[str] = frozenset()

    @classmethod
    def parse(
        cls,
        include: Optional[str] = None,
        exclude: Optional[str] = None
    ) -> "TagFilter":
        """Build a filter from comma-separated CLI strings."""
        return cls(include=_split_tags(include), exclude=_split_tags(exclude))

    def admits(self, tags: Iterable[str]) -> bool:
        tags = frozenset(tags)
        if tags & self.exclude:
            return False
        if self.include and not (tags & self.include):
            return False
        return True

    def reason_omitted(self, tags: Iterable[str]) -> Optional[str]:
        """Explain why tags are rejected, or None when admitted."""
        tags = frozenset(tags)
        excluded = tags & self.exclude
        if excluded:
            return f"excluded by tag(s): {', '.join(sorted(excluded))}"
        if self.include and not (tags & self.include):
            return f"no tag in include set: {', '.join(sorted(self.include))}"
        return None

    @property
    def is_empty(self) -> bool:
        return not self.include and not self.exclude


@dataclass(frozen=True)
class ExecutionPlan:
    """Ordered runnable subset plus what was left out and why."""
    runnable: Tuple[Directive, ...]
    omitted: Tuple[Tuple[str, str], ...] = ()
    tag_filter: TagFilter = field(default_factory=TagFilter)

    @property
    def runnable_ids(self) -> List[str]:
        return [d.id for d in self.runnable]

    def __len__(self) -> int:
        return len(self.runnable)


class ExecutionPlanner:
    """
    Builds the runnable subset for a Run.

    The planner checks structural invariants (unique ids, known handlers)
    over the FULL list, not just the filtered subset, so a tag filter can
    never hide a broken target.
    """

    def plan(
        self,
        directives: Iterable[Directive],
        tag_filter: Optional[TagFilter] = None,
        handlers: Optional[Mapping[str, Handler]] = None
    ) -> ExecutionPlan:
        """
        Filter directives by tags, preserving declaration order.

        Args:
            directives: Full ordered directive list
            tag_filter: Tag filter (default: run everything)
            handlers: Known handlers; when given, notifies are checked

        Returns:
            ExecutionPlan

        Raises:
            PlanningError: On duplicate ids or unknown notified handlers
        """
        tag_filter = tag_filter or TagFilter()
        directives = list(directives)

        self._check_unique_ids(directives)
        if handlers is not None:
            self._check_notifies(directives, handlers)

        runnable: List[Directive] = []
        omitted: List[Tuple[str, str]] = []

        for directive in directives:
            reason = tag_filter.reason_omitted(directive.tags)
            if reason is None:
                runnable.append(directive)
            else:
                omitted.append((directive.id, reason))

        logger.info(
            f"Planned {len(runnable)}/{len(directives)} directives "
            f"(include={sorted(tag_filter.include)}, exclude={sorted(tag_filter.exclude)})"
        )

        return ExecutionPlan(
            runnable=tuple(runnable),
            omitted=tuple(omitted),
            tag_filter=tag_filter
        )

    def _check_unique_ids(self, directives: List[Directive]):
        counts: Dict[str, int] = {}
        for directive in directives:
            counts[directive.id] = counts.get(directive.id, 0) + 1
        duplicates = sorted(i for i, n in counts.items() if n > 1)
        if duplicates:
            raise PlanningError(f"Duplicate directive id(s): {', '.join(duplicates)}")

    def _check_notifies(self, directives: List[Directive], handlers: Mapping[str, Handler]):
        for directive in directives:
            for name in directive.notifies:
                if name not in handlers:
                    raise PlanningError(
                        f"Directive '{directive.id}' notifies unknown handler '{name}'"
                    )
