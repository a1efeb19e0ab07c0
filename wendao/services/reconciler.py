# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""State reconciliation: merge an untrusted delta into canonical state.

The delta comes straight from model output, so nothing in it is trusted:
attribute names are checked against the closed set, list elements and slot
values are coerced to strings, and item records are validated one by one.
Anything that cannot be accepted is dropped rather than reported as an
error. ``reconcile`` never mutates its arguments and never raises.
"""

from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from wendao.logging import StructuredLogger
from wendao.models import (
    ATTRIBUTE_NAMES,
    BOUNDED_PAIRS,
    CURRENCY_FIELD,
    EQUIPMENT_SLOTS,
    NUMERIC_FIELDS,
    TEXT_FIELDS,
    CharacterState,
    CharacterUpdate,
    ItemDetails,
    coerce_int,
    coerce_text_item,
    coerce_text_list,
)

logger = StructuredLogger(__name__)

DeltaInput = Union[CharacterUpdate, Mapping[str, Any], None]


def reconcile(prior: CharacterState, delta: DeltaInput) -> CharacterState:
    """Merge a partial update into a copy of ``prior``.

    Merge policy:
    - scalars present in the delta overwrite, absent ones are untouched
    - equipment merges per slot, item knowledge per key (entries replaced
      wholesale), attributes per key restricted to the closed set
    - inventory, techniques and status effects are replaced in full when
      present; techniques are de-duplicated
    - currency is clamped at zero
    - bound repair raises every max to at least its current value

    Args:
        prior: Canonical state before the turn
        delta: Proposed update (model, raw mapping, or None)

    Returns:
        New canonical state
    """
    state = prior.model_copy(deep=True)
    update = _as_update(delta)
    if update is not None:
        _merge_scalars(state, update)
        _merge_equipment(state, update.equipment)
        _merge_attributes(state, update.attributes)
        _merge_item_knowledge(state, update.item_knowledge)
        _replace_lists(state, update)
    return repair_bounds(state)


def repair_bounds(state: CharacterState) -> CharacterState:
    """Raise each max to its current value where current exceeds it.

    Mutates and returns ``state``; applying it twice changes nothing.
    """
    for current_field, max_field in BOUNDED_PAIRS:
        current = getattr(state, current_field)
        if current > getattr(state, max_field):
            setattr(state, max_field, current)
    if state.spirit_stones < 0:
        state.spirit_stones = 0
    return state


def _as_update(delta: DeltaInput) -> Optional[CharacterUpdate]:
    if delta is None or isinstance(delta, CharacterUpdate):
        return delta
    if not isinstance(delta, Mapping):
        logger.warning("Ignoring non-mapping state update", delta_type=type(delta).__name__)
        return None
    try:
        return CharacterUpdate.model_validate(dict(delta))
    except ValidationError as e:
        logger.warning("Ignoring unusable state update", error_count=e.error_count())
        return None


def _merge_scalars(state: CharacterState, update: CharacterUpdate) -> None:
    for field_name in TEXT_FIELDS:
        value = getattr(update, field_name)
        if value is not None and value.strip():
            setattr(state, field_name, value.strip())

    for field_name in NUMERIC_FIELDS:
        value = getattr(update, field_name)
        if value is None:
            continue
        if field_name == CURRENCY_FIELD:
            value = max(0, value)
        setattr(state, field_name, value)


def _merge_equipment(state: CharacterState, equipment: Optional[Dict[str, Any]]) -> None:
    if not equipment:
        return
    for slot in EQUIPMENT_SLOTS:
        if slot not in equipment:
            continue
        value = coerce_text_item(equipment[slot])
        if value is not None:
            setattr(state.equipment, slot, value)


def _merge_attributes(state: CharacterState, attributes: Optional[Dict[str, Any]]) -> None:
    if not attributes:
        return
    dropped = []
    for key, raw in attributes.items():
        value = coerce_int(raw)
        if key not in ATTRIBUTE_NAMES or value is None:
            dropped.append(key)
            continue
        state.attributes[key] = value
    if dropped:
        logger.info("Dropped attribute updates", dropped_keys=",".join(dropped))


def _merge_item_knowledge(state: CharacterState, knowledge: Optional[Dict[str, Any]]) -> None:
    if not knowledge:
        return
    for raw_name, entry in knowledge.items():
        name = raw_name.strip()
        if not name or entry is None:
            continue
        if isinstance(entry, ItemDetails):
            state.item_knowledge[name] = entry.model_copy(deep=True)
            continue
        if not isinstance(entry, Mapping):
            logger.info("Dropped item record", item=name, entry_type=type(entry).__name__)
            continue
        try:
            state.item_knowledge[name] = ItemDetails.model_validate(dict(entry))
        except ValidationError:
            logger.info("Dropped item record", item=name)


def _replace_lists(state: CharacterState, update: CharacterUpdate) -> None:
    if update.inventory is not None:
        state.inventory = coerce_text_list(update.inventory)
    if update.techniques is not None:
        state.techniques = _unique(coerce_text_list(update.techniques))
    if update.status_effects is not None:
        state.status_effects = coerce_text_list(update.status_effects)


def _unique(items: List[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result
