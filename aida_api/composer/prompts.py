"""
Prompt templates for assistant replies.

The system prompt carries the assistant persona, the conversation summary and
the fused knowledge as numbered sources; the conversation history is sent as
chat messages.
"""

from typing import List

from langchain_core.prompts import PromptTemplate

from aida_api.llm.completion import ChatMessage
from aida_api.models import CustomerProfile
from aida_api.tools.context_aggregator import AggregatedContext
from aida_libs.memory.models import AssistantProfile, ContextWindow


ASSISTANT_SYSTEM_PROMPT = PromptTemplate.from_template(
    """You are {assistant_name}, a customer support assistant for this business.

{instructions}

Respond in a {response_style} tone, in the customer's language ({language}).
Only state facts supported by the knowledge below or by the conversation. If the
answer is not there, say so and offer to connect the customer with the team.

**CONVERSATION SUMMARY**:
{summary}

**RELEVANT KNOWLEDGE**:
{knowledge}

**CUSTOMER**:
Name: {customer_name}
Sentiment: {sentiment}
"""
)

NO_KNOWLEDGE = "No matching business knowledge was found."


def format_knowledge(context: AggregatedContext) -> str:
    """Numbered sources from the fused ranking, conversation turns excluded."""
    lines = [
        f"[{index}] {result.content}"
        for index, result in enumerate(
            (r for r in context.ranked if r.source_type != "conversation"), start=1
        )
    ]
    return "\n".join(lines) if lines else NO_KNOWLEDGE


def build_system_prompt(
    assistant: AssistantProfile,
    context: AggregatedContext,
    customer: CustomerProfile,
) -> str:
    return ASSISTANT_SYSTEM_PROMPT.format(
        assistant_name=assistant.name,
        instructions=assistant.instructions or "Help customers with questions about products, services and orders.",
        response_style=assistant.response_style,
        language=customer.language or assistant.language,
        summary=context.summary or "New conversation.",
        knowledge=format_knowledge(context),
        customer_name=customer.name or "unknown",
        sentiment=customer.sentiment,
    )


def build_messages(window: ContextWindow, message: str, history_turns: int = 10) -> List[ChatMessage]:
    """Recent turns as alternating chat messages, ending with the new message."""
    messages: List[ChatMessage] = []
    for turn in window.turns[-history_turns:] if history_turns > 0 else []:
        messages.append(ChatMessage(role="user", content=turn.user_text))
        if turn.system_text:
            messages.append(ChatMessage(role="assistant", content=turn.system_text))
    messages.append(ChatMessage(role="user", content=message))
    return messages
