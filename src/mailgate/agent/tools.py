import copy
import logging
from typing import Any, Dict

from openai import APIError, OpenAI

from ..errors import ExecutionError
from ..services.outbox import Outbox
from ..services.retrieval import Retriever
from ..settings import Settings
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = "No relevant emails found."

SEARCH_INBOX_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1, "description": "What to look for in the inbox"},
        "k": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
    },
    "required": ["query"],
}

GENERATE_DRAFT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "recipient": {"type": "string", "description": "Who the email is addressed to"},
        "details": {"type": "string", "description": "What the email should say"},
    },
    "required": ["recipient", "details"],
}

SAVE_DRAFT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "subject": {"type": "string"},
        "body": {"type": "string"},
        "recipient": {"type": "string", "default": ""},
    },
    "required": ["subject", "body"],
}

SEND_EMAIL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "recipient": {"type": "string", "pattern": r"^[^@\s]+@[^@\s]+$", "description": "Recipient address"},
        "subject": {"type": "string", "minLength": 1},
        "body": {"type": "string", "minLength": 1},
    },
    "required": ["recipient", "subject", "body"],
}


def format_search_results(docs: list) -> str:
    if not docs:
        return NO_RESULTS_MESSAGE
    return "\n\n".join(f"Email {i}:\n{doc.content}" for i, doc in enumerate(docs, 1))


def _make_draft_client(settings: Settings) -> OpenAI:
    """Construct an OpenAI client for the draft tool (draft_* settings, falling back to the main ones)."""
    return OpenAI(
        api_key=settings.draft_api_key or settings.openai_api_key,
        base_url=settings.draft_base_url or settings.openai_base_url,
        timeout=settings.request_timeout_seconds,
    )


def register_email_tools(
    registry: ToolRegistry,
    *,
    retriever: Retriever,
    outbox: Outbox,
    settings: Settings,
    draft_client: OpenAI | None = None,
) -> ToolRegistry:
    """Register the email assistant's tools on ``registry``.

    Gating of send_email follows ``settings.send_mode``; gating of save_draft
    follows ``settings.gate_drafts``.
    """
    client = draft_client or _make_draft_client(settings)
    search_schema = copy.deepcopy(SEARCH_INBOX_SCHEMA)
    search_schema["properties"]["k"]["default"] = settings.search_top_k

    async def search_inbox(query: str, k: int = settings.search_top_k) -> str:
        logger.info("Searching inbox for %r (k=%d)", query, k)
        docs = await retriever.search(query, k)
        return format_search_results(docs)

    def generate_draft(recipient: str, details: str) -> str:
        try:
            response = client.chat.completions.create(
                model=settings.draft_model,
                messages=[
                    {"role": "system", "content": settings.draft_system_prompt},
                    {
                        "role": "user",
                        "content": f"Draft an email to {recipient} using details: {details}",
                    },
                ],
                temperature=0.0,
            )
        except (APIError, TimeoutError, ConnectionError) as e:
            logger.error("Tool generate_draft request failed: %s", e)
            raise ExecutionError(f"Draft generation failed: {e}") from e

        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            logger.error("Tool generate_draft response parse failed: %s", e)
            raise ExecutionError(f"Unexpected draft response: {e}") from e

    def save_draft(subject: str, body: str, recipient: str = "") -> Dict[str, Any]:
        return outbox.save_draft(subject=subject, body=body, recipient=recipient)

    def send_email(recipient: str, subject: str, body: str) -> Dict[str, Any]:
        return outbox.send(recipient=recipient, subject=subject, body=body)

    registry.register(
        "search_inbox",
        search_schema,
        search_inbox,
        side_effecting=False,
        description="Search the inbox for emails related to a query.",
    )
    registry.register(
        "generate_draft",
        GENERATE_DRAFT_SCHEMA,
        generate_draft,
        side_effecting=False,
        description="Generate an email body for a recipient from a short description.",
    )
    registry.register(
        "save_draft",
        SAVE_DRAFT_SCHEMA,
        save_draft,
        side_effecting=settings.gate_drafts,
        description="Save an email draft (subject and body) for later.",
    )
    registry.register(
        "send_email",
        SEND_EMAIL_SCHEMA,
        send_email,
        side_effecting=settings.send_mode == "review",
        description="Send an email to a recipient.",
    )
    return registry
