"""Deep merge for partial entity updates.

Every repository's update path goes through `deep_merge`, so a client that
patches only `git_state.current_sha` keeps `git_state.ref`.

Rules, per key of the patch:

- absent, or set to `UNSET`: skip, the base value survives
- `None`: explicit null
- list / tuple: replaced wholesale, never concatenated
- dict, where the base also holds a dict: merged recursively
- anything else: replaced
"""

import copy
from typing import Any, Mapping, Union

from pydantic import BaseModel


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

Patch = Union[Mapping[str, Any], BaseModel]


def _is_plain_mapping(value: Any) -> bool:
    return isinstance(value, Mapping)


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new dict with `patch` merged into `base`. Inputs are not mutated."""
    result = {key: copy.deepcopy(value) for key, value in base.items()}

    for key, value in patch.items():
        if value is UNSET:
            continue

        if value is None:
            result[key] = None
        elif isinstance(value, (list, tuple)):
            result[key] = copy.deepcopy(list(value))
        elif _is_plain_mapping(value):
            current = base.get(key)
            if _is_plain_mapping(current):
                result[key] = deep_merge(current, value)
            else:
                result[key] = deep_merge({}, value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def patch_from(patch: Patch) -> dict[str, Any]:
    """Normalize a patch into a plain dict.

    Pydantic models are dumped with `exclude_unset=True` so a field the caller
    never set is absent, while a field explicitly set to None stays None.
    """
    if isinstance(patch, BaseModel):
        return patch.model_dump(mode="json", exclude_unset=True)
    return dict(patch)
