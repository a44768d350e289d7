"""
context.py — SafeWalk Voice · Conversation context & prompt builder
===================================================================
ConversationContext is a pure value object: the host replaces it through
update_context(partial) and the prompt builder reads it.  Nothing in the
recognition / queue path mutates it.
"""

from __future__ import annotations

from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_PROMPT_INTRO


class TrustedContact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    phone: str
    email: Optional[str] = None
    relationship: str = ""
    is_primary: bool = False


class RouteDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    distance_m: float = Field(default=0.0, ge=0.0)
    estimated_time_min: float = Field(default=0.0, ge=0.0)
    danger_zones: int = Field(default=0, ge=0)
    safe_spots: int = Field(default=0, ge=0)
    route_type: Literal["safest", "fastest"] = "safest"


class ConversationContext(BaseModel):
    """Situational data for the current walk."""
    model_config = ConfigDict(frozen=True)

    current_location: Optional[str] = None
    destination: Optional[str] = None
    route_status: Optional[str] = None
    safety_score: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    walking_state: Literal["planning", "walking", "arrived"] = "planning"
    route_details: Optional[RouteDetails] = None
    trusted_contacts: tuple[TrustedContact, ...] = ()

    def merged(self, partial: Mapping[str, Any]) -> "ConversationContext":
        """Return a new context with the top-level keys of `partial` replaced."""
        base = {name: getattr(self, name) for name in type(self).model_fields}
        base.update(partial)
        return ConversationContext.model_validate(base)


def _score_label(score: float) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    return "moderate"


def _contact_summary(contact: TrustedContact) -> str:
    parts = [contact.name]
    if contact.relationship:
        parts.append(f"({contact.relationship})")
    if contact.is_primary:
        parts.append("[primary]")
    return " ".join(parts)


def build_system_prompt(context: ConversationContext, intro: str = DEFAULT_PROMPT_INTRO) -> str:
    """Render the companion's system prompt from the current context."""
    score = context.safety_score
    lines = [
        intro,
        "",
        "Current Context:",
        "- App: Personal safety navigation app",
        f"- User State: {context.walking_state}",
        f"- Current Location: {context.current_location or 'Unknown'}",
        f"- Destination: {context.destination or 'Not set'}",
        f"- Route Status: {context.route_status or 'No route'}",
        f"- Safety Score: {f'{score:g}%' if score is not None else 'Unknown'}",
    ]

    route = context.route_details
    if route is not None:
        lines += [
            "",
            "Route Details:",
            f"- Distance: {route.distance_m / 1000:.1f} km",
            f"- Estimated Time: {route.estimated_time_min:g} minutes",
            f"- Route Type: {route.route_type} route",
            f"- Safety Spots: {route.safe_spots} nearby safe locations",
            f"- Caution Areas: {route.danger_zones} areas requiring extra attention",
        ]

    if context.trusted_contacts:
        lines += ["", "Trusted Contacts (can receive an emergency alert):"]
        lines += [f"- {_contact_summary(c)}" for c in context.trusted_contacts]

    lines += [
        "",
        "Guidelines:",
        "1. Keep responses short and conversational (1-2 sentences max)",
        "2. Be supportive and reassuring for safety concerns",
        "3. Focus on navigation, safety, and encouragement",
        "4. Provide specific information when asked about the route",
        "5. If the user seems to be in distress, suggest they contact emergency services"
        " or say \"emergency\" to alert their trusted contacts",
        "6. For casual conversation, keep it brief and redirect to safety/navigation topics",
        "7. Use the current context to provide relevant, helpful responses",
    ]

    if score is not None:
        lines += [
            "",
            f"The route safety score of {score:g}% is {_score_label(score)}.",
        ]

    lines += [
        "",
        "Respond naturally as a caring companion who's walking with them and knows their route details.",
    ]
    return "\n".join(lines)


def build_prompt(context: ConversationContext, transcript: str, intro: str = DEFAULT_PROMPT_INTRO) -> str:
    """Full single-turn prompt: system text plus the user's words."""
    return f"{build_system_prompt(context, intro)}\n\nUser: {transcript}"
