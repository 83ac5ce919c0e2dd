"""
Message templating: spintax variation and {{variable}} substitution.
"""

import logging
import random
import re
from typing import Optional, Dict, Any, List, Tuple

logger = logging.getLogger(__name__)

# {a|b|c}; options may hold {{variable}} tokens but no other braces
SPINTAX_OPTION = r"(?:\{\{[^{}]*\}\}|[^{}])*?"
SPINTAX_PATTERN = re.compile(r"\{(" + SPINTAX_OPTION + r"\|" + SPINTAX_OPTION + r")\}")
VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
SEQUENCE_SEPARATOR = re.compile(r"\n\s*---+\s*\n")


class TemplateService:
    """Renders first messages and script templates."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def resolve_spintax(self, text: str) -> str:
        """
        Replace every `{a|b|c}` group with one of its options, innermost first.

        Args:
            text: template text

        Returns:
            str: text with all spintax groups resolved
        """
        if not text:
            return text or ""

        def choose(match: re.Match) -> str:
            return self.rng.choice(match.group(1).split("|"))

        previous = None
        while previous != text:
            previous = text
            text = SPINTAX_PATTERN.sub(choose, text)
        return text

    def substitute_variables(self, text: str, variables: Dict[str, Any]) -> str:
        """Replace `{{key}}` placeholders. Unknown keys are left untouched."""
        if not text:
            return text or ""

        def replace(match: re.Match) -> str:
            key = match.group(1)
            value = variables.get(key)
            if value is None:
                return match.group(0)
            return str(value)

        return VARIABLE_PATTERN.sub(replace, text)

    def render(self, text: str, variables: Dict[str, Any]) -> str:
        """Spintax first, then variables, so variables may sit inside options."""
        return self.substitute_variables(self.resolve_spintax(text), variables)

    def split_name(self, full_name: Optional[str]) -> Tuple[str, str]:
        """'Max Peter Mustermann' -> ('Max', 'Peter Mustermann'); single tokens get an empty last name."""
        parts = (full_name or "").split()
        if not parts:
            return "", ""
        return parts[0], " ".join(parts[1:])

    def build_variables(
        self,
        contact_name: Optional[str] = None,
        contact_phone: Optional[str] = None,
        agent=None,
        trigger_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Assemble the variable map for a conversation.

        Args:
            contact_name: full contact name
            contact_phone: contact phone number
            agent: Agent model or None
            trigger_data: flattened CRM payload variables

        Returns:
            Dict[str, Any]: variables keyed by placeholder name
        """
        variables: Dict[str, Any] = dict(trigger_data or {})
        first_name, last_name = self.split_name(contact_name)
        first_name = first_name or variables.get("first_name") or ""
        last_name = last_name or variables.get("last_name") or ""
        name = contact_name or " ".join(p for p in (first_name, last_name) if p)

        variables.update({
            "name": name,
            "contact_name": name,
            "first_name": first_name,
            "last_name": last_name,
            "vorname": first_name,
            "nachname": last_name,
        })
        if contact_phone:
            variables["contact_phone"] = contact_phone
            variables.setdefault("phone", contact_phone)
        if agent is not None:
            variables["agent_name"] = agent.display_name
            if agent.booking_cta:
                variables["booking_cta"] = agent.booking_cta
            if agent.calendly_link:
                variables["calendly_link"] = agent.calendly_link
        return variables

    def split_sequence(self, text: str) -> List[str]:
        """Split a multi-part first message on `---` separator lines."""
        return [part.strip() for part in SEQUENCE_SEPARATOR.split(text or "") if part.strip()]


# Global template service instance
template_service = TemplateService()
