import json
from pathlib import Path

import pytest

from conftest import ScriptedModel, make_settings
from mailgate.agent import TurnEngine, build_context
from mailgate.models import AssistantOutput, Reply
from mailgate.services.session_store import InMemorySessionStore


@pytest.mark.asyncio
async def test_build_context_wires_email_tools(tmp_path: Path) -> None:
    """build_context indexes the corpus and registers every email tool."""
    emails = tmp_path / "emails.json"
    emails.write_text(
        json.dumps([{"from": "a@b.com", "subject": "Refund", "body": "Charged twice", "date": "2025-01-02"}]),
        encoding="utf-8",
    )
    settings = make_settings(emails_path=emails, outbox_path=tmp_path / "outbox.json")
    model = ScriptedModel(
        [AssistantOutput.call("search_inbox", {"query": "refund"}, "call_1"), AssistantOutput.reply("Found it.")]
    )

    context = await build_context(settings, store=InMemorySessionStore(), model=model)

    assert context.registry.names() == ["search_inbox", "generate_draft", "save_draft", "send_email"]
    result = await TurnEngine(context).submit("s1", "any refund emails?")
    assert result == Reply("Found it.")

    session = await context.store.load("s1")
    assert session.messages[2].tool_result.startswith("Email 1:\nFROM: a@b.com")
    assert session.tool_calls_count == 1


@pytest.mark.asyncio
async def test_build_context_without_corpus_still_searches(tmp_path: Path) -> None:
    settings = make_settings(emails_path=tmp_path / "missing.json")
    context = await build_context(settings, store=InMemorySessionStore(), model=ScriptedModel([]))
    assert await context.registry.get("search_inbox").executor(query="refund") == "No relevant emails found."
