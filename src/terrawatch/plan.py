"""Plan ingestion: ``terraform show -json`` output -> change descriptors."""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import PlanParseError
from .logging import get_logger

logger = get_logger("plan")

SUPPORTED_FORMAT_MAJOR = "1"


class Action(str, Enum):
    """Well-known action names in ``resource_changes[].change.actions``.

    Plans may carry names not listed here (``forget`` since terraform 1.7);
    those pass through ingestion unchanged.
    """

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"
    NO_OP = "no-op"
    FORGET = "forget"


_KNOWN_ACTIONS = frozenset(action.value for action in Action)


@dataclass(frozen=True)
class ChangeDescriptor:
    """One pending (resource address, action) pair from a plan."""

    address: str
    action: str

    def __post_init__(self):
        object.__setattr__(self, "action", action_name(self.action))


def action_name(action: str) -> str:
    """Plain action string for an ``Action`` or a raw name."""
    return action.value if isinstance(action, Action) else action


def _decode(document: str | bytes | Mapping) -> Mapping:
    if isinstance(document, Mapping):
        return document
    try:
        data = json.loads(document)
    except (TypeError, ValueError) as e:
        raise PlanParseError(f"plan is not valid JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise PlanParseError("plan document must be a JSON object")
    return data


def _check_format_version(data: Mapping) -> None:
    version = data.get("format_version")
    if version is None:
        return
    if str(version).split(".")[0] != SUPPORTED_FORMAT_MAJOR:
        logger.warning("Unsupported plan format version", format_version=version)


def _parse_actions(position: int, address: str, change: object) -> list[str]:
    if not isinstance(change, Mapping):
        raise PlanParseError(f"resource_changes[{position}] ({address}): missing 'change'")
    actions = change.get("actions")
    if not isinstance(actions, list):
        raise PlanParseError(
            f"resource_changes[{position}] ({address}): 'change.actions' must be a list"
        )
    for name in actions:
        if not isinstance(name, str) or not name:
            raise PlanParseError(
                f"resource_changes[{position}] ({address}): invalid action {name!r}"
            )
        if name not in _KNOWN_ACTIONS:
            logger.debug("Unlisted plan action", address=address, action=name)
    return list(actions)


def ingest_plan(document: str | bytes | Mapping) -> list[ChangeDescriptor]:
    """Flatten a plan into one descriptor per resource and action.

    Resources keep document order and actions keep their listed order, so a
    replace (``["delete", "create"]``) yields two descriptors. Nothing is
    filtered or deduplicated. A plan without ``resource_changes`` has no
    changes.

    Raises:
        PlanParseError: The document is malformed; no partial result is
            returned.
    """
    data = _decode(document)
    _check_format_version(data)

    resource_changes = data.get("resource_changes", [])
    if not isinstance(resource_changes, list):
        raise PlanParseError("'resource_changes' must be a list")

    descriptors: list[ChangeDescriptor] = []
    for position, entry in enumerate(resource_changes):
        if not isinstance(entry, Mapping):
            raise PlanParseError(f"resource_changes[{position}] must be an object")
        address = entry.get("address")
        if not isinstance(address, str) or not address:
            raise PlanParseError(f"resource_changes[{position}]: missing 'address'")
        for action in _parse_actions(position, address, entry.get("change")):
            descriptors.append(ChangeDescriptor(address=address, action=action))

    logger.debug(
        "Ingested plan",
        resources=len(resource_changes),
        changes=len(descriptors),
    )
    return descriptors


def load_plan(terraform, plan_file: Path) -> list[ChangeDescriptor]:
    """Run ``terraform show -json <plan_file>`` and ingest its output.

    Args:
        terraform: A ``Terraform`` instance.
        plan_file: Saved plan produced by ``terraform plan -out``.

    Raises:
        PlanParseError: terraform could not render the plan, or the output is
            malformed.
    """
    outcome = terraform.show({"json": True}, {"silent": True, "async_mode": False}, plan_file)
    if not outcome.ok:
        raise PlanParseError(
            f"'{outcome.command}' exited with status {outcome.returncode}: "
            f"{outcome.stderr.strip()}"
        )
    return ingest_plan(outcome.stdout)
