"""User identity resolution for the optional user dimension.

Three identity modes:
- teamAlias: a validated, non-identifying handle such as "alex-dev"
- entraObjectId: the configured Entra object ID (GUID-shaped)
- pseudonymous: sha256 of tenant + object IDs from the storage access
  token, scoped to the dataset so keys do not correlate across datasets

Resolution never raises. Anything unusable degrades to "no user
dimension", the stronger privacy default.
"""

import hashlib
import re
from collections.abc import Mapping
from typing import Any

from core.config import UserIdentityMode
from core.logger import get_logger
from schemas import ResolvedIdentity, TeamAliasValidation

logger = get_logger(__name__)

MIN_TEAM_ALIAS_LENGTH = 2
MAX_TEAM_ALIAS_LENGTH = 39

_TEAM_ALIAS_PATTERN = re.compile(r"^[a-z0-9-]+$")
_COMMON_NAME_PATTERN = re.compile(
    r"\b(john|jane|smith|doe|admin|user|dev|test|demo)\b", re.IGNORECASE
)
_GUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

_PII_HINT = "Do not use email addresses or real names."

_EMPTY = ResolvedIdentity()


def validate_team_alias(value: str | None) -> TeamAliasValidation:
    alias = (value or "").strip()
    if not alias:
        return TeamAliasValidation(
            valid=False,
            error=f'Team alias is required (for example "alex-dev"). {_PII_HINT}',
        )
    if len(alias) < MIN_TEAM_ALIAS_LENGTH:
        return TeamAliasValidation(
            valid=False,
            error=f"Team alias is too short (minimum {MIN_TEAM_ALIAS_LENGTH} characters).",
        )
    if len(alias) > MAX_TEAM_ALIAS_LENGTH:
        return TeamAliasValidation(
            valid=False,
            error=(
                f"Team alias is too long (maximum {MAX_TEAM_ALIAS_LENGTH} "
                'characters). Use a shorter handle like "alex-dev".'
            ),
        )
    if "@" in alias:
        return TeamAliasValidation(
            valid=False,
            error="Team alias cannot contain @ (looks like an email address).",
        )
    if " " in alias:
        return TeamAliasValidation(
            valid=False,
            error='Team alias cannot contain spaces. Use dashes, e.g. "alex-dev".',
        )
    if not _TEAM_ALIAS_PATTERN.match(alias):
        return TeamAliasValidation(
            valid=False,
            error=(
                "Team alias may only use lowercase letters, numbers and dashes. "
                f"{_PII_HINT}"
            ),
        )
    if _COMMON_NAME_PATTERN.search(alias):
        return TeamAliasValidation(
            valid=False,
            error=(
                f'Team alias "{alias}" looks like a real name or common identifier. '
                'Use a non-identifying handle like "team-frontend".'
            ),
        )
    return TeamAliasValidation(valid=True, alias=alias)


def is_entra_object_id(value: str | None) -> bool:
    return bool(_GUID_PATTERN.match((value or "").strip()))


def derive_pseudonymous_user_key(tenant_id: str, object_id: str, dataset_id: str) -> str:
    raw = f"tenant:{tenant_id}|object:{object_id}|dataset:{dataset_id}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def resolve_user_identity(
    include_user_dimension: bool,
    identity_mode: UserIdentityMode,
    configured_user_id: str | None,
    dataset_id: str,
    access_token_claims: Mapping[str, Any] | None = None,
) -> ResolvedIdentity:
    if not include_user_dimension:
        return _EMPTY

    try:
        if identity_mode == "teamAlias":
            result = validate_team_alias(configured_user_id)
            if not result.valid:
                return _EMPTY
            return ResolvedIdentity(user_id=result.alias, user_key_type="teamAlias")

        if identity_mode == "entraObjectId":
            object_id = (configured_user_id or "").strip()
            if not is_entra_object_id(object_id):
                return _EMPTY
            return ResolvedIdentity(user_id=object_id, user_key_type="entraObjectId")

        claims = access_token_claims or {}
        tenant_id = claims.get("tid")
        object_id = claims.get("oid")
        if not isinstance(tenant_id, str) or not isinstance(object_id, str):
            return _EMPTY
        if not tenant_id or not object_id:
            return _EMPTY
        return ResolvedIdentity(
            user_id=derive_pseudonymous_user_key(tenant_id, object_id, dataset_id),
            user_key_type="pseudonymous",
        )
    except Exception as e:
        logger.warning(
            "identity.resolve.failed", identity_mode=identity_mode, error=type(e).__name__
        )
        return _EMPTY
