"""Prompt templates for chat completions and title generation."""

from __future__ import annotations

from datetime import datetime

from streamchat.core.time import prompt_timestamp

SHORT_MESSAGE_LENGTH = 10

CHAT_SYSTEM_PROMPT = """You are a chat assistant. The current date and time is {now} (UTC).

FORMATTING:
- Use Markdown to format answers
- Use fenced code blocks with a language tag for code
- Put important points in bold
- Use numbered lists for steps and Markdown tables when relevant

STYLE:
- Be direct and concise while staying professional
- Structure answers clearly and give concrete examples when relevant
- Comment any code you provide
- Never provide malicious code and stay factual
- Ask for clarification when the request is ambiguous

Adapt the level of detail to the complexity of the question."""

CUSTOM_INSTRUCTIONS_HEADER = "\n\nConversation instructions:\n"

TITLE_SYSTEM_PROMPT = """You write short, precise titles that capture the essence of a conversation.

STRICT RULES:
- Between 4 and 8 words
- At most 60 characters
- No punctuation, quotes or special characters
- Start with a capital letter
- Avoid generic words such as discussion, conversation or chat"""

TITLE_USER_PROMPT = """Analyze this conversation and write a professional title that follows these rules:

- Between 4 and 6 words
- No unnecessary articles
- No punctuation
- Capture the main topic

Conversation:
{context}

Reply with the title only, without any other text or explanation."""

DETAIL_PREFIX = "Could you answer this in detail: "

GREETING_FRAMING = (
    "The opening message is a greeting: '{message}'. As an assistant I will help "
    "throughout this exchange, answering questions and assisting with tasks."
)
SHORT_MESSAGE_FRAMING = (
    "The opening message is short: '{message}'. As an assistant I will analyze "
    "the request and provide an appropriate answer."
)


def build_chat_system_prompt(
    custom_instructions: str | None = None, now: datetime | None = None
) -> str:
    """System prompt for the main stream, with optional per-conversation instructions."""
    prompt = CHAT_SYSTEM_PROMPT.format(now=prompt_timestamp(now))
    if custom_instructions and custom_instructions.strip():
        prompt += CUSTOM_INSTRUCTIONS_HEADER + custom_instructions.strip()
    return prompt


def build_title_prompt(context: str) -> str:
    return TITLE_USER_PROMPT.format(context=context)


def enrich_short_user_message(content: str) -> str:
    """Ask for a detailed answer when the last user message is very short."""
    stripped = content.strip()
    if len(stripped) < SHORT_MESSAGE_LENGTH:
        return f"{DETAIL_PREFIX}{stripped}"
    return content
