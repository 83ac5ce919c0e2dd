"""
AI Agent Processor.
Classifies inbound messages (escalation, disqualification) and generates replies
from the agent's persona, script and FAQ.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from app.config.settings import settings
from app.db.models import Agent, Conversation, Message, MessageDirection
from app.services.llm_service import openai_llm_service
from app.services.template_service import template_service

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_KEYWORDS = ["mensch", "mitarbeiter", "chef", "manager", "beschwerde", "anwalt", "rechtsanwalt"]

DEFAULT_ESCALATION_MESSAGE = (
    "Ich verstehe, dass du mit einem Mitarbeiter sprechen möchtest. Ich leite das Gespräch weiter "
    "und jemand wird sich so schnell wie möglich bei dir melden. Vielen Dank für deine Geduld!"
)

DEFAULT_DISQUALIFY_MESSAGE = (
    "Vielen Dank für deine Zeit! Leider passt unser Angebot aktuell nicht zu deiner Situation. "
    "Wir wünschen dir alles Gute!"
)

BLOCKED_REPLY = "Entschuldigung, ich kann bei dieser Anfrage leider nicht helfen. Bitte wende dich direkt an unser Team."

BLOCKED_PATTERNS = [
    re.compile(r"\b(passwort|password|kennwort)\b", re.IGNORECASE),
    re.compile(r"\b(kreditkarte|credit\s*card)\b", re.IGNORECASE),
    re.compile(r"\b(sozialversicherung|ssn)\b", re.IGNORECASE),
]

LEAD_IN_PATTERN = re.compile(r"^(Hier ist meine Antwort:|Natürlich!|Gerne!)\s*", re.IGNORECASE)

HISTORY_TURNS = 10


@dataclass
class ProcessingResult:
    """Decision for one inbound message."""
    action: str  # "reply", "escalate" or "disqualify"
    response: str
    reason: Optional[str] = None
    next_script_step: Optional[int] = None


def find_keyword(message: str, keywords: List[str]) -> Optional[str]:
    """First keyword contained in the message, case-insensitive."""
    lower_message = (message or "").lower()
    for keyword in keywords:
        if keyword and keyword.lower() in lower_message:
            return keyword
    return None


def get_script_step(agent: Agent, step_number: Optional[int]) -> Optional[Dict[str, Any]]:
    for step in agent.script_steps or []:
        if step.get("step") == step_number:
            return step
    return None


class AgentProcessorService:
    """Turns inbound messages into escalations, disqualifications or replies."""

    def escalation_keywords(self, agent: Agent) -> List[str]:
        keywords: List[str] = []
        for keyword in list(agent.escalation_topics or []) + DEFAULT_ESCALATION_KEYWORDS:
            if keyword not in keywords:
                keywords.append(keyword)
        return keywords

    def check_escalation(self, message: str, agent: Agent) -> Optional[str]:
        """
        Returns:
            Escalation reason, or None
        """
        keyword = find_keyword(message, self.escalation_keywords(agent))
        if keyword:
            return f'Keyword erkannt: "{keyword}"'
        return None

    def check_disqualification(self, message: str, agent: Agent) -> Optional[str]:
        criterion = find_keyword(message, list(agent.disqualify_criteria or []))
        if criterion:
            return f'Disqualifiziert: "{criterion}"'
        return None

    def escalation_response(self, agent: Agent) -> str:
        return agent.escalation_message or DEFAULT_ESCALATION_MESSAGE

    def conversation_variables(self, conversation: Conversation, agent: Optional[Agent]) -> Dict[str, Any]:
        return template_service.build_variables(
            contact_name=conversation.contact_name,
            contact_phone=conversation.contact_phone,
            agent=agent,
            trigger_data=conversation.trigger_data,
        )

    def build_system_prompt(self, agent: Agent, current_step: Optional[Dict[str, Any]], contact_name: Optional[str]) -> str:
        """
        System prompt from persona, goal, current script step and FAQ.

        The step template is given as orientation, not as literal output.
        """
        personality = agent.personality or "Freundlich und professionell"
        goal = agent.goal or agent.company_info or "Hilf dem Kunden und beantworte seine Fragen"

        sections = [
            f"Du bist {agent.display_name}, ein KI-Assistent für WhatsApp.",
            f"PERSÖNLICHKEIT:\n{personality}",
            f"ZIEL:\n{goal}",
        ]
        if contact_name:
            sections.append(f"AKTUELLER KONTAKT:\nName: {contact_name}")

        rules = [
            "- Antworte immer auf Deutsch",
            "- Halte dich kurz und prägnant (WhatsApp-Style)",
            "- Sei freundlich aber professionell",
            "- Verwende keine Emojis außer wenn es passt",
            "- Wenn du etwas nicht weißt, sag es ehrlich",
            "- Versuche das Gespräch zum Ziel zu führen",
        ]
        if contact_name:
            rules.append(f'- Sprich den Kontakt wenn passend mit seinem Namen "{contact_name}" an')
        sections.append("WICHTIGE REGELN:\n" + "\n".join(rules))

        if current_step:
            step_text = f"AKTUELLER GESPRÄCHSSCHRITT ({current_step.get('step')}):\nZiel: {current_step.get('goal') or ''}"
            if current_step.get("message_template"):
                step_text += f"\nVorlage: {current_step['message_template']}"
            sections.append(step_text)

        faq_section = self.build_faq_section(agent.faq_entries)
        if faq_section:
            sections.append(f"HÄUFIGE FRAGEN (FAQ):\n{faq_section}")

        sections.append(
            "WICHTIG: Antworte NUR mit der Nachricht, die du senden würdest. "
            "Keine Erklärungen, keine Metakommentare."
        )
        return "\n\n".join(sections)

    def build_faq_section(self, faq_entries: Optional[List[Dict[str, str]]]) -> str:
        return "\n\n".join(
            f"F: {entry.get('question', '')}\nA: {entry.get('answer', '')}" for entry in (faq_entries or [])
        )

    def build_chat_history(self, messages: List[Message], system_prompt: str) -> List[Dict[str, str]]:
        history = [{"role": "system", "content": system_prompt}]
        for message in messages[-HISTORY_TURNS:]:
            role = "user" if message.direction == MessageDirection.INBOUND.value else "assistant"
            history.append({"role": role, "content": message.content})
        return history

    def apply_guardrails(self, response: str) -> str:
        """Block sensitive replies, cap the length and strip AI lead-ins."""
        for pattern in BLOCKED_PATTERNS:
            if pattern.search(response or ""):
                logger.warning("Guardrail blocked an LLM reply")
                return BLOCKED_REPLY

        filtered = response or ""
        if len(filtered) > settings.max_reply_length:
            filtered = filtered[:settings.max_reply_length] + "..."
        filtered = LEAD_IN_PATTERN.sub("", filtered)
        return filtered.strip()

    def determine_next_step(self, message: str, current_step: Optional[Dict[str, Any]], agent: Agent) -> int:
        """
        Next script step after a reply.

        Step conditions (keywords) may jump to `next_step_on_match`; otherwise
        the following step is used when it exists and the final step is held.
        """
        if not current_step:
            return 1
        step_number = current_step.get("step") or 1

        conditions = current_step.get("conditions") or {}
        if find_keyword(message, conditions.get("keywords") or []):
            return conditions.get("next_step_on_match") or step_number + 1

        if get_script_step(agent, step_number + 1):
            return step_number + 1
        return step_number

    async def process_incoming_message(
        self,
        message: str,
        conversation: Conversation,
        agent: Agent,
        history: List[Message]
    ) -> ProcessingResult:
        """
        Decide how to answer an inbound message.

        Escalation keywords win over everything else, disqualification criteria
        come next, otherwise the LLM writes the reply for the current step.

        Args:
            message: Inbound message text
            conversation: Active conversation
            agent: Agent driving the conversation
            history: Previous messages in chronological order (excluding `message`)

        Returns:
            ProcessingResult
        """
        variables = self.conversation_variables(conversation, agent)

        escalation_reason = self.check_escalation(message, agent)
        if escalation_reason:
            logger.info(f"Escalating conversation {conversation.id}: {escalation_reason}")
            return ProcessingResult(
                action="escalate",
                response=template_service.render(self.escalation_response(agent), variables),
                reason=escalation_reason,
            )

        disqualify_reason = self.check_disqualification(message, agent)
        if disqualify_reason:
            logger.info(f"Disqualifying conversation {conversation.id}: {disqualify_reason}")
            return ProcessingResult(
                action="disqualify",
                response=template_service.render(agent.disqualify_message or DEFAULT_DISQUALIFY_MESSAGE, variables),
                reason=disqualify_reason,
            )

        current_step = get_script_step(agent, conversation.current_script_step)
        system_prompt = self.build_system_prompt(agent, current_step, variables.get("name"))
        chat_messages = self.build_chat_history(history, system_prompt)
        chat_messages.append({"role": "user", "content": message})

        reply = await openai_llm_service.chat_completion(chat_messages)
        reply = template_service.render(self.apply_guardrails(reply), variables)

        return ProcessingResult(
            action="reply",
            response=reply,
            next_script_step=self.determine_next_step(message, current_step, agent),
        )

    async def generate_first_message(
        self,
        agent: Agent,
        contact_name: Optional[str] = None,
        contact_phone: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        First outbound message: the step 1 template when present, otherwise an LLM draft.
        """
        first_step = get_script_step(agent, 1)
        variables = template_service.build_variables(contact_name, contact_phone, agent, trigger_data)
        if first_step and first_step.get("message_template"):
            return template_service.render(first_step["message_template"], variables)

        prompt = (
            f"Du bist {agent.display_name}. Schreibe eine kurze, freundliche erste Nachricht an "
            f"{contact_name or 'einen neuen Kontakt'}.\n"
            f"Ziel: {agent.goal or agent.company_info or 'Kunden helfen'}\n"
            f"Persönlichkeit: {agent.personality or 'freundlich und professionell'}\n\n"
            "Antworte NUR mit der Nachricht, nichts anderes."
        )
        reply = await openai_llm_service.chat_completion(
            [{"role": "system", "content": prompt}], temperature=0.8, max_tokens=200
        )
        return self.apply_guardrails(reply)

    async def generate_suggested_response(self, original_message: str, agent: Agent, history: List[Message]) -> str:
        """Reply draft for a human handling an escalated conversation."""
        context = "\n".join(
            f"{'Kunde' if m.direction == MessageDirection.INBOUND.value else 'Agent'}: {m.content}"
            for m in history[-5:]
        )
        faq_section = self.build_faq_section(agent.faq_entries)
        prompt = (
            "Du bist ein Assistent, der einem menschlichen Mitarbeiter hilft, auf eine eskalierte "
            "Kundenanfrage zu antworten.\n\n"
            f"KONTEXT:\n{context}\n\n"
            f"NEUE NACHRICHT VOM KUNDEN:\n{original_message}\n\n"
        )
        if faq_section:
            prompt += f"FAQ-WISSEN:\n{faq_section}\n\n"
        prompt += (
            "Schreibe einen professionellen, hilfreichen Antwortvorschlag, den der Mitarbeiter als Basis "
            "nutzen kann. Halte ihn kurz (WhatsApp-Style) aber vollständig.\n\n"
            "NUR die Antwortnachricht ausgeben, keine Erklärungen."
        )
        return await openai_llm_service.chat_completion(
            [{"role": "system", "content": prompt}], temperature=0.7, max_tokens=300
        )


# Global agent processor instance
agent_processor_service = AgentProcessorService()
