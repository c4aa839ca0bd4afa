"""
Selecting the transformation mode for a piece of dictated text.

A mode can be triggered by a spoken prefix ("hex, what time is it"), by the
frontmost application, or act as the general fallback. When several modes
match, the most specific tier wins and configuration order breaks ties.
"""

import logging
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

from .models import TransformationMode

logger = logging.getLogger(__name__)


class MatchTier(IntEnum):
    """Match precedence; lower values win."""

    PREFIX_AND_APP = 0
    PREFIX = 1
    APP = 2
    FALLBACK = 3


@dataclass(frozen=True)
class ModeMatch:
    mode: TransformationMode
    text: str
    tier: MatchTier
    matched_prefix: Optional[str] = None


def _prefix_pattern(prefix: str) -> "re.Pattern[str]":
    return re.compile(rf"^\s*{re.escape(prefix)}(?:[,.!?:;\s]+|$)", re.IGNORECASE)


def strip_voice_prefix(text: str, prefixes: Sequence[str]) -> Optional[Tuple[str, str]]:
    """
    Match ``text`` against a mode's spoken prefixes.

    Args:
        text: Dictated text
        prefixes: Candidate prefixes, checked in order

    Returns:
        ``(stripped_text, matched_prefix)`` for the first prefix that
        matches, or None.
    """
    for prefix in prefixes:
        trimmed = prefix.strip()
        if not trimmed:
            continue
        match = _prefix_pattern(trimmed).match(text)
        if match:
            return text[match.end():].strip(), trimmed
    return None


def _classify(
    mode: TransformationMode,
    text: str,
    bundle_identifier: Optional[str],
) -> Optional[ModeMatch]:
    has_prefixes = any(prefix.strip() for prefix in mode.voice_prefixes)
    has_apps = bool(mode.applies_to_bundle_identifiers)
    in_app = has_apps and mode.applies_to(bundle_identifier)

    if has_prefixes:
        stripped = strip_voice_prefix(text, mode.voice_prefixes)
        if stripped is not None:
            remaining, prefix = stripped
            tier = MatchTier.PREFIX_AND_APP if in_app else MatchTier.PREFIX
            return ModeMatch(mode, remaining, tier, prefix)

    if in_app:
        return ModeMatch(mode, text, MatchTier.APP)
    if has_prefixes or has_apps:
        return None
    return ModeMatch(mode, text, MatchTier.FALLBACK)


def match_mode(
    modes: Sequence[TransformationMode],
    text: str,
    bundle_identifier: Optional[str] = None,
) -> Optional[ModeMatch]:
    """
    Pick the single best mode for ``text`` typed into ``bundle_identifier``.

    Precedence: prefix + app > prefix (any app) > app > general fallback.
    Ties resolve to the earliest mode in ``modes``.

    Returns:
        The match (with any spoken prefix removed from its text), or None
        when nothing applies; callers then pass the text through unchanged.
    """
    best: Optional[ModeMatch] = None
    for mode in modes:
        candidate = _classify(mode, text, bundle_identifier)
        if candidate is None:
            continue
        if best is None or candidate.tier < best.tier:
            best = candidate
            if best.tier == MatchTier.PREFIX_AND_APP:
                break

    if best is None:
        logger.debug(f"No transformation mode matched (app={bundle_identifier})")
    else:
        logger.info(
            f"Selected mode '{best.mode.name}' ({best.tier.name.lower()}, app={bundle_identifier})"
        )
    return best


def candidate_modes(
    modes: Sequence[TransformationMode],
    text: str,
    bundle_identifier: Optional[str] = None,
) -> List[ModeMatch]:
    """All matching modes in precedence order (stable within a tier)."""
    matches = [m for m in (_classify(mode, text, bundle_identifier) for mode in modes) if m is not None]
    return sorted(matches, key=lambda m: m.tier)
