# assistant.py
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from autogen_agentchat.agents import AssistantAgent

from slot_swap.config import get_model_client
from slot_swap.data_models import Slot, SlotStatus

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Event"
MAX_SUGGESTIONS = 3


def _describe(slot: Slot) -> str:
    return f"{slot.title} ({slot.start_time.strftime('%a %Y-%m-%d %H:%M')} - {slot.end_time.strftime('%H:%M')})"


def _extract_json(content: str, opening: str, closing: str) -> Any:
    json_str = content[content.find(opening):content.rfind(closing) + 1]
    return json.loads(json_str)


class SchedulingAssistantAgent:
    """
    Advisory text about schedules and swaps. Nothing it says is authoritative:
    its answers are never used to change a slot or a swap request, and any
    failure degrades to an empty or default answer.
    """

    def __init__(self, name: str = "SchedulingAssistant", model_client=None):
        self.name = name
        self.model_client = model_client
        self.system_message = """You are a helpful AI scheduling assistant for a shift and schedule swapping platform.
            Help users optimize their schedules, find swap opportunities, and answer questions about their calendar.
            You have access to the user's current schedule and to marketplace slots that other users want to swap.
            When suggesting swaps, consider time conflicts and preferences and explain why a swap would be beneficial.
            Be friendly, concise, and actionable."""

    async def _run(self, task: str) -> str:
        # AssistantAgent keeps history between runs, so one agent per task
        agent = AssistantAgent(
            name=self.name,
            model_client=self.model_client or get_model_client(),
            system_message=self.system_message,
        )
        response = await agent.run(task=task)
        return str(response.messages[-1].content)

    async def suggest_swaps(self, my_slots: List[Slot], available_slots: List[Slot], owner_names: Dict[str, str]) -> List[Dict]:
        """Up to three {targetSlotId, mySlotId, reason, compatibilityScore} suggestions."""
        if not my_slots or not available_slots:
            return []
        mine = "\n".join(f"{i + 1}. ID: {s.id}, {_describe(s)}" for i, s in enumerate(my_slots))
        theirs = "\n".join(
            f"{i + 1}. ID: {s.id}, {_describe(s)} by {owner_names.get(s.owner_id, 'Unknown')}"
            for i, s in enumerate(available_slots)
        )
        task = f"""
        You are an intelligent scheduling assistant. Analyze these time slots and suggest optimal swaps.

        My Available Slots for Swapping:
        {mine}

        Other Users' Available Slots:
        {theirs}

        Suggest up to {MAX_SUGGESTIONS} best swap matches considering:
        1. Similar time duration
        2. Time of day compatibility
        3. Weekday vs weekend patterns
        4. Meeting type compatibility

        Return ONLY a JSON array with this exact format (no other text):
        [{{"targetSlotId": "slot_id", "mySlotId": "my_slot_id", "reason": "brief reason", "compatibilityScore": 0.85}}]
        """
        try:
            suggestions = _extract_json(await self._run(task), "[", "]")
        except Exception:
            logger.exception("[%s] Failed to get swap suggestions", self.name)
            return []
        if not isinstance(suggestions, list):
            return []

        my_ids = {s.id for s in my_slots}
        their_ids = {s.id for s in available_slots}
        valid = []
        for suggestion in suggestions:
            if not isinstance(suggestion, dict):
                continue
            if suggestion.get("mySlotId") in my_ids and suggestion.get("targetSlotId") in their_ids:
                valid.append(suggestion)
        return valid[:MAX_SUGGESTIONS]

    async def detect_conflicts(self, events: List[Slot]) -> List[str]:
        """Plain-language warnings about overlaps, missing breaks and odd hours."""
        if not events:
            return []
        listing = "\n".join(f"{i + 1}. {_describe(e)} [{e.status.value}]" for i, e in enumerate(events))
        task = f"""
        Analyze this schedule for potential conflicts or issues:

        Events:
        {listing}

        Identify:
        1. Overlapping events
        2. Back-to-back meetings without breaks
        3. Events outside typical work hours
        4. Long duration events that might need splitting

        Return a JSON array of warning strings: ["warning 1", "warning 2"]
        """
        try:
            warnings = _extract_json(await self._run(task), "[", "]")
        except Exception:
            logger.exception("[%s] Failed to analyze schedule", self.name)
            return []
        if not isinstance(warnings, list):
            return []
        return [str(w) for w in warnings]

    async def chat(self, message: str, my_events: List[Slot], marketplace: List[Slot], owner_names: Dict[str, str]) -> str:
        now = datetime.now(timezone.utc)
        upcoming = [e for e in my_events if e.start_time > now]
        swappable = [e for e in my_events if e.status == SlotStatus.SWAPPABLE]
        my_lines = "\n".join(
            f"- {_describe(e)} | Status: {e.status.value}" + (f" | Notes: {e.description}" if e.description else "")
            for e in my_events[:15]
        )
        swappable_lines = "\n".join(f"- {_describe(e)}" for e in swappable) or "None currently marked as swappable"
        market_lines = "\n".join(
            f"- {_describe(e)} | Offered by: {owner_names.get(e.owner_id, 'Unknown')}" for e in marketplace
        ) or "No swappable slots currently available in the marketplace"

        task = f"""
        Current Date/Time: {now.isoformat()}

        USER'S SCHEDULE:
        Total Events: {len(my_events)}
        Upcoming Events: {len(upcoming)}
        Swappable Slots: {len(swappable)}

        My Events:
        {my_lines}

        My Swappable Slots:
        {swappable_lines}

        MARKETPLACE (Available Swaps from Others):
        {market_lines}

        User Question: {message}
        """
        try:
            return await self._run(task)
        except Exception:
            logger.exception("[%s] Chat request failed", self.name)
            return "Sorry, I could not generate a response."

    async def generate_title(self, start_time: datetime, end_time: datetime, context: Optional[str] = None) -> str:
        context_line = f"Context: {context}" if context else ""
        task = f"""
        Generate a concise, professional event title for a calendar slot:
        Time: {start_time.isoformat()} - {end_time.isoformat()}
        {context_line}

        Return ONLY the title (max 50 characters), no quotes or extra text.
        """
        try:
            title = (await self._run(task)).strip().strip('"')
        except Exception:
            logger.exception("[%s] Failed to generate title", self.name)
            return DEFAULT_TITLE
        return title[:50] or DEFAULT_TITLE
