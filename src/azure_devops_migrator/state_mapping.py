"""
Workflow state mapping between the source and target processes.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from .exceptions import MigrationError
from .models import WorkflowState

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import MigrationStats, WorkItemTypePair
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)


class StateTranslator:
    """Handles user-supplied state translation patterns.

    Patterns look like ``"Task|Active:In Progress"``. The type part may be
    ``*`` (or left out entirely) to apply to every work item type, and the
    state part may end in ``*`` to match a prefix.
    """

    def __init__(self, patterns: Sequence[str] | None) -> None:
        self.patterns: list[tuple[str, str, str]] = []

        for pattern in patterns or []:
            if ":" not in pattern:
                msg = f"Invalid pattern format: {pattern}"
                raise ValueError(msg)
            source, target = pattern.split(":", 1)
            type_name, _, state = source.rpartition("|")
            if not state or not target:
                msg = f"Invalid pattern format: {pattern}"
                raise ValueError(msg)
            self.patterns.append((type_name or "*", state, target))

    def translate(self, work_item_type: str, state: str) -> str | None:
        """Return the configured target state, or None if no pattern matches."""
        for type_pattern, state_pattern, target in self.patterns:
            if type_pattern not in ("*", work_item_type):
                continue
            if "*" in state_pattern:
                regex_pattern = re.escape(state_pattern).replace(r"\*", "(.*)")
                if re.fullmatch(regex_pattern, state):
                    return target
            elif state_pattern == state:
                return target
        return None


class StateAutoMap:
    """Lookup of (work item type name, source state) -> target state.

    Built once per run and read-only afterwards. Explicit overrides take
    precedence over the computed mapping.
    """

    _mapping: dict[tuple[str, str], str]
    _overrides: StateTranslator

    def __init__(self, overrides: StateTranslator | None = None) -> None:
        self._mapping = {}
        self._overrides = overrides or StateTranslator(None)

    def add(self, work_item_type: str, source_state: str, target_state: str) -> None:
        self._mapping[(work_item_type, source_state)] = target_state

    def get(self, work_item_type: str, source_state: str) -> str | None:
        override = self._overrides.translate(work_item_type, source_state)
        if override is not None:
            return override
        return self._mapping.get((work_item_type, source_state))

    def items(self) -> list[tuple[tuple[str, str], str]]:
        return list(self._mapping.items())

    def __len__(self) -> int:
        return len(self._mapping)

    def __contains__(self, key: object) -> bool:
        return key in self._mapping


def _category_sequence(states: Sequence[WorkflowState]) -> list[str]:
    """Return the categories of ``states`` ordered by their first appearance in state order."""
    first_order: dict[str, int] = {}
    for state in states:
        first_order[state.category] = min(first_order.get(state.category, state.order), state.order)
    return sorted(first_order, key=lambda category: first_order[category])


def compute_insertion_order(
    new_state: WorkflowState,
    source_states: Sequence[WorkflowState],
    target_states: Sequence[WorkflowState],
) -> int:
    """Compute the order at which a missing source state is inserted in the target.

    - Category already present in the target: right after its highest order.
    - New category: between the nearest neighbouring categories (in source
      order) that exist in the target.
    - No neighbouring category in the target, or inverted bounds: after the
      last target state.

    The result may equal the order of an existing state (adjacent neighbours,
    or a category placed right before an existing one). The server then
    shifts that state and the ones after it down by one, so a taken order
    is still a usable slot.
    """
    end = max((s.order for s in target_states), default=0) + 1

    same_category = [s.order for s in target_states if s.category == new_state.category]
    if same_category:
        return max(same_category) + 1

    target_orders: dict[str, list[int]] = {}
    for state in target_states:
        target_orders.setdefault(state.category, []).append(state.order)

    categories = _category_sequence([*source_states, new_state])
    position = categories.index(new_state.category)
    previous = next((c for c in reversed(categories[:position]) if c in target_orders), None)
    following = next((c for c in categories[position + 1 :] if c in target_orders), None)

    if previous is None and following is None:
        return end

    lower = max(target_orders[previous]) if previous is not None else None
    upper = min(target_orders[following]) if following is not None else None

    if lower is None:
        return upper if upper is not None else end
    if upper is None:
        return lower + 1
    if lower >= upper:
        logger.warning(
            f"Cannot place state {new_state.name!r} ({new_state.category}) between {previous} "
            f"(order {lower}) and {following} (order {upper}); appending at order {end}"
        )
        return end
    return lower + 1


def choose_target_state(source_state: WorkflowState, target_states: Sequence[WorkflowState]) -> str | None:
    """Pick the target state a source state maps to.

    Exact name wins; otherwise the lowest-ordered visible state of the same
    category; otherwise the lowest-ordered visible state of any category.
    """
    for state in target_states:
        if state.name.casefold() == source_state.name.casefold():
            return state.name

    visible = sorted((s for s in target_states if not s.hidden), key=lambda s: s.order)
    for state in visible:
        if state.category == source_state.category:
            return state.name
    if visible:
        return visible[0].name
    ordered = sorted(target_states, key=lambda s: s.order)
    return ordered[0].name if ordered else None


class StateMappingBuilder:
    """Ensures source workflow states exist in the target and builds the state map."""

    _source: WorkItemStore
    _target: WorkItemStore
    _overrides: StateTranslator | None

    def __init__(
        self,
        source: WorkItemStore,
        target: WorkItemStore,
        overrides: StateTranslator | None = None,
    ) -> None:
        self._source = source
        self._target = target
        self._overrides = overrides

    def build(
        self,
        source_process: str,
        target_process: str,
        pairs: Sequence[WorkItemTypePair],
        stats: MigrationStats | None = None,
    ) -> StateAutoMap:
        """Create missing states and map every source state of every pair.

        Args:
            source_process: Source process id
            target_process: Target process id
            pairs: Work item types present in both processes
            stats: Counters and error list to update, if any

        Returns:
            The state map for the run
        """
        auto_map = StateAutoMap(self._overrides)

        for pair in pairs:
            try:
                source_states = self._source.get_states(source_process, pair.source_reference)
                target_states = self._target.get_states(target_process, pair.target_reference)
            except MigrationError as e:
                logger.warning(f"Could not read states of {pair.name}: {e}")
                if stats is not None:
                    stats.errors.append(f"states of {pair.name}: {e}")
                continue

            target_states = self._ensure_states(target_process, pair, source_states, target_states, stats)

            for source_state in source_states:
                target_name = choose_target_state(source_state, target_states)
                if target_name is not None:
                    auto_map.add(pair.name, source_state.name, target_name)
                    logger.debug(f"State map {pair.name}: {source_state.name} -> {target_name}")

        logger.info(f"Built state map with {len(auto_map)} entries for {len(pairs)} work item types")
        return auto_map

    def _ensure_states(
        self,
        target_process: str,
        pair: WorkItemTypePair,
        source_states: list[WorkflowState],
        target_states: list[WorkflowState],
        stats: MigrationStats | None,
    ) -> list[WorkflowState]:
        """Create every source state missing by name in the target; return the refreshed target states."""
        known = {s.name.casefold() for s in target_states}

        for source_state in sorted(source_states, key=lambda s: s.order):
            if source_state.name.casefold() in known:
                continue

            order = compute_insertion_order(source_state, source_states, target_states)
            wanted = WorkflowState(
                name=source_state.name,
                category=source_state.category,
                order=order,
                color=source_state.color,
            )
            try:
                created = self._target.create_state(target_process, pair.target_reference, wanted)
            except MigrationError as e:
                logger.warning(f"Failed to create state {source_state.name!r} on {pair.name}: {e}")
                if stats is not None:
                    stats.errors.append(f"state {source_state.name} of {pair.name}: {e}")
                continue

            known.add(source_state.name.casefold())
            if stats is not None:
                stats.states_created += 1
            logger.info(f"Created state {source_state.name!r} ({source_state.category}) on {pair.name} at order {order}")

            if source_state.hidden and source_state.is_system and created.id:
                try:
                    self._target.hide_state(target_process, pair.target_reference, created.id)
                except MigrationError as e:
                    # Some system states cannot be hidden
                    logger.debug(f"Could not hide state {source_state.name!r} on {pair.name}: {e}")

            try:
                target_states = self._target.get_states(target_process, pair.target_reference)
            except MigrationError as e:
                logger.debug(f"Could not re-read states of {pair.name}: {e}")
                target_states = [*target_states, created]

        return target_states
