"""
Model Router — profile-based LLM routes with upgrade-only escalation.

A *profile* names one endpoint + model + retry budget.  Profiles are
ordered per role into an escalation chain; after repeated failures of the
same kind the router moves a session to the next profile in its chain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .errors import RouteResolutionError

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_ID = "default"
DEFAULT_PROVIDER_ID = "openai_compatible"
DEFAULT_ROLE = "worker"
DEFAULT_MODEL = "gpt-4o-mini"

POLICY_UPGRADE_ONLY = "upgrade_only"
POLICY_DISABLED = "disabled"


def clamp_int(raw: Any, fallback: int, lo: int, hi: int) -> int:
    """Floor ``raw`` into ``[lo, hi]``; non-numeric input gives ``fallback``."""
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return fallback
    return max(lo, min(hi, value))


def normalize_policy(raw: Any) -> str:
    return POLICY_DISABLED if str(raw or "").strip().lower() == POLICY_DISABLED else POLICY_UPGRADE_ONLY


# ── Route ───────────────────────────────────────────────────────────

@dataclass
class LlmRoute:
    """Everything needed to call one model profile."""
    profile: str
    provider: str
    base: str
    key: str = field(repr=False, default="")
    model: str = DEFAULT_MODEL
    timeout_ms: int = 120_000
    retry_max_attempts: int = 2
    max_retry_delay_ms: int = 60_000
    role: str = DEFAULT_ROLE
    escalation_policy: str = POLICY_UPGRADE_ONLY
    ordered_profiles: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "profile": self.profile,
            "provider": self.provider,
            "base": self.base,
            "model": self.model,
            "timeout_ms": self.timeout_ms,
            "retry_max_attempts": self.retry_max_attempts,
            "max_retry_delay_ms": self.max_retry_delay_ms,
            "role": self.role,
            "escalation_policy": self.escalation_policy,
            "ordered_profiles": list(self.ordered_profiles),
        }


@dataclass
class ProfileEscalationDecision:
    type: str            # no_change / escalate / blocked
    reason: str
    profile: str
    next_profile: Optional[str] = None

    @property
    def should_escalate(self) -> bool:
        return self.type == "escalate"


def decide_profile_escalation(
    ordered_profiles: list[str],
    current_profile: str,
    repeated_failure: bool,
    policy: str = POLICY_UPGRADE_ONLY,
) -> ProfileEscalationDecision:
    ordered = [str(p).strip() for p in ordered_profiles if str(p or "").strip()]
    current = str(current_profile or "").strip()

    if normalize_policy(policy) == POLICY_DISABLED:
        return ProfileEscalationDecision("no_change", "policy_disabled", current)
    if not repeated_failure:
        return ProfileEscalationDecision("no_change", "not_repeated_failure", current)
    if current not in ordered:
        return ProfileEscalationDecision("blocked", "unknown_profile", current)

    index = ordered.index(current)
    if index + 1 >= len(ordered):
        return ProfileEscalationDecision("blocked", "no_higher_profile", current)
    return ProfileEscalationDecision("escalate", "repeated_failure", current, ordered[index + 1])


# ── Profile collection ──────────────────────────────────────────────

def _profile_from(raw: dict, profile_id: str, llm: dict) -> LlmRoute:
    return LlmRoute(
        profile=profile_id,
        provider=str(raw.get("provider") or DEFAULT_PROVIDER_ID).strip() or DEFAULT_PROVIDER_ID,
        base=str(raw.get("base") or raw.get("api_base") or "").strip(),
        key=str(raw.get("key") or raw.get("api_key") or "").strip(),
        model=str(raw.get("model") or DEFAULT_MODEL).strip() or DEFAULT_MODEL,
        timeout_ms=clamp_int(raw.get("timeout_ms"), clamp_int(llm.get("timeout_ms"), 120_000, 1_000, 300_000), 1_000, 300_000),
        retry_max_attempts=clamp_int(raw.get("retry_max_attempts"), clamp_int(llm.get("retry_max_attempts"), 2, 0, 6), 0, 6),
        max_retry_delay_ms=clamp_int(raw.get("max_retry_delay_ms"), clamp_int(llm.get("max_retry_delay_ms"), 60_000, 0, 300_000), 0, 300_000),
        role=str(raw.get("role") or DEFAULT_ROLE).strip() or DEFAULT_ROLE,
    )


def collect_profiles(llm: dict) -> dict[str, LlmRoute]:
    """``llm.profiles`` (mapping or list), else one profile from flat keys."""
    profiles: dict[str, LlmRoute] = {}
    raw_profiles = llm.get("profiles")
    if isinstance(raw_profiles, dict):
        items = [(str(k), v) for k, v in raw_profiles.items()]
    elif isinstance(raw_profiles, list):
        items = [(str((v or {}).get("id") or DEFAULT_PROFILE_ID), v) for v in raw_profiles]
    else:
        items = []

    for profile_id, value in items:
        if not isinstance(value, dict):
            continue
        profile_id = profile_id.strip() or DEFAULT_PROFILE_ID
        profiles[profile_id] = _profile_from(value, profile_id, llm)

    if not profiles:
        profiles[DEFAULT_PROFILE_ID] = _profile_from(llm, DEFAULT_PROFILE_ID, llm)
    return profiles


def _ordered_profiles(llm: dict, role: str, selected: str, profiles: dict[str, LlmRoute]) -> list[str]:
    chains = llm.get("profile_chains") or {}
    chain = [str(p).strip() for p in (chains.get(role) or []) if str(p).strip() in profiles]
    if chain:
        return chain if selected in chain else [selected, *chain]

    same_role = [p.profile for p in profiles.values() if p.role == role]
    if same_role:
        return same_role if selected in same_role else [selected, *same_role]
    return [selected]


def resolve_llm_route(
    llm: dict,
    profile: Optional[str] = None,
    role: Optional[str] = None,
    escalation_policy: Optional[str] = None,
) -> LlmRoute:
    """Resolve the route for ``profile`` from the ``llm`` config section."""
    profiles = collect_profiles(llm)
    wanted = str(profile or llm.get("default_profile") or DEFAULT_PROFILE_ID).strip() or DEFAULT_PROFILE_ID
    selected = profiles.get(wanted) or profiles.get(DEFAULT_PROFILE_ID) or next(iter(profiles.values()))
    resolved_role = str(role or "").strip() or selected.role

    if not selected.base or not selected.key:
        raise RouteResolutionError(
            "No usable LLM configured (base/key missing)",
            reason="missing_llm_config",
            profile=selected.profile,
            role=resolved_role,
        )

    return replace(
        selected,
        role=resolved_role,
        escalation_policy=normalize_policy(escalation_policy or llm.get("escalation_policy")),
        ordered_profiles=_ordered_profiles(llm, resolved_role, selected.profile, profiles),
    )


# ── Router ──────────────────────────────────────────────────────────

class ModelRouter:
    """
    Resolves routes from config and walks the escalation chain.

    Usage:
        router = ModelRouter(config.get("llm", {}), provider_registry)
        route = router.resolve()
        next_route = router.escalate(route, repeated_failure=True)
    """

    def __init__(self, llm_config: dict, provider_registry: Any = None):
        self._llm = llm_config or {}
        self._providers = provider_registry
        self._escalation_count = 0
        self.last_decision: Optional[ProfileEscalationDecision] = None

    def resolve(self, profile: Optional[str] = None, role: Optional[str] = None) -> LlmRoute:
        return resolve_llm_route(self._llm, profile=profile, role=role)

    def escalate(self, route: LlmRoute, repeated_failure: bool) -> Optional[LlmRoute]:
        """
        Next route up the chain, or None when escalation is not allowed.

        The reason is kept on ``last_decision`` so callers can explain a
        blocked escalation to the user.
        """
        decision = decide_profile_escalation(
            route.ordered_profiles,
            route.profile,
            repeated_failure,
            route.escalation_policy,
        )
        self.last_decision = decision
        if not decision.should_escalate:
            return None

        try:
            next_route = resolve_llm_route(
                self._llm,
                profile=decision.next_profile,
                role=route.role,
                escalation_policy=route.escalation_policy,
            )
        except RouteResolutionError as e:
            logger.warning(f"Escalation target {decision.next_profile} unusable: {e}")
            self.last_decision = ProfileEscalationDecision(
                "blocked", "target_unusable", route.profile, decision.next_profile,
            )
            return None

        if next_route.profile != decision.next_profile:
            self.last_decision = ProfileEscalationDecision(
                "blocked", "unknown_profile", route.profile, decision.next_profile,
            )
            return None
        if self._providers is not None and not self._providers.has(next_route.provider):
            logger.warning(f"Escalation target provider not registered: {next_route.provider}")
            self.last_decision = ProfileEscalationDecision(
                "blocked", "provider_not_registered", route.profile, decision.next_profile,
            )
            return None

        # Keep the chain of the route we started from
        next_route.ordered_profiles = list(route.ordered_profiles)
        self._escalation_count += 1
        logger.info(f"Escalating LLM route {route.profile} -> {next_route.profile}")
        return next_route

    @property
    def escalation_count(self) -> int:
        return self._escalation_count

    def summary(self) -> dict:
        return {
            "escalation_count": self._escalation_count,
            "profiles": sorted(collect_profiles(self._llm)),
            "last_decision": self.last_decision.__dict__ if self.last_decision else None,
        }
