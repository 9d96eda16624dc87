import asyncio
import json
import logging
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Awaitable, Callable, Dict, List

from .agent import TurnEngine, build_context
from .errors import PROTOCOL_ERRORS, LoopLimitExceeded, ModelUnavailable, SchemaError, StoreUnavailable
from .models import Approve, Decision, Edit, Reject, Reply, Suspended, Suspension
from .settings import get_settings

EXIT_COMMAND = "/bye"
CHOICES: Dict[str, str] = {"approve": "Approve", "reject": "Reject", "edit": "Edit arguments"}
Ask = Callable[[str], Awaitable[str]]


def setup_cli_logging() -> logging.Logger:
    """Log to logs/cli.log only, so the terminal stays readable."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("mailgate")
    if logger.handlers:
        return logger

    logger.setLevel(get_settings().log_level)
    fh = RotatingFileHandler(logs_dir / "cli.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
    logger.addHandler(fh)
    return logger


def menu_options(suspension: Suspension) -> List[str]:
    return [d for d in ("approve", "reject", "edit") if d in suspension.allowed_decisions]


def render_suspension(suspension: Suspension) -> str:
    lines = [
        f"Tool execution requires approval: {suspension.request.name}",
        json.dumps(suspension.request.arguments, indent=2),
        "",
        "Choose:",
    ]
    for idx, option in enumerate(menu_options(suspension), 1):
        lines.append(f"{idx}. {CHOICES[option]}")
    return "\n".join(lines)


def parse_choice(text: str, suspension: Suspension) -> str | None:
    """Map a menu number or decision name to a decision type, or None."""
    options = menu_options(suspension)
    value = text.strip().lower()
    if value.isdigit():
        idx = int(value) - 1
        return options[idx] if 0 <= idx < len(options) else None
    return value if value in options else None


async def prompt_edits(suspension: Suspension, ask: Ask) -> Dict[str, object]:
    """Ask for each argument; an empty answer keeps the current value."""
    arguments = dict(suspension.request.arguments)
    for key, current in suspension.request.arguments.items():
        answer = await ask(f"{key} [{current}]: ")
        if answer.strip():
            arguments[key] = answer
    return arguments


async def build_decision(choice: str, suspension: Suspension, ask: Ask) -> Decision:
    if choice == "approve":
        return Approve(suspension.id)
    if choice == "reject":
        return Reject(suspension.id)
    return Edit(suspension.id, await prompt_edits(suspension, ask))


async def repl(engine: TurnEngine, session_id: str, turn_timeout: float | None = None) -> None:
    logger = logging.getLogger("mailgate.cli")

    async def ask(prompt: str) -> str:
        return await asyncio.to_thread(input, prompt)

    while True:
        session = await engine.state(session_id)
        pending = session.pending_suspension
        query = (await ask("You: ")).strip()
        if query == EXIT_COMMAND:
            break
        if not query:
            continue

        try:
            if pending is None:
                result = await asyncio.wait_for(engine.submit(session_id, query), turn_timeout)
            else:
                choice = parse_choice(query, pending)
                if choice is None:
                    print(render_suspension(pending))
                    continue
                decision = await build_decision(choice, pending, ask)
                result = await asyncio.wait_for(engine.resume(session_id, decision), turn_timeout)
        except SchemaError as e:
            print(f"Invalid edit ({e}). The action is still awaiting your decision.")
            continue
        except PROTOCOL_ERRORS as e:
            print(f"[{e.kind}] {e}")
            continue
        except (ModelUnavailable, LoopLimitExceeded, StoreUnavailable) as e:
            logger.warning("Turn failed: %s", e)
            print(f"[{e.kind}] {e}. Please try again.")
            continue
        except asyncio.TimeoutError:
            logger.error("Turn timed out after %ss", turn_timeout)
            print("[turn_timeout] The turn took too long. Please try again.")
            continue

        if isinstance(result, Suspended):
            print(render_suspension(result.suspension))
        elif isinstance(result, Reply):
            print(result.text)


async def main_async(session_id: str | None = None) -> None:
    setup_cli_logging()
    context = await build_context()
    engine = TurnEngine(context)
    try:
        await repl(engine, session_id or uuid.uuid4().hex, context.settings.turn_timeout_seconds)
    finally:
        await context.store.close()


def main() -> int:
    try:
        asyncio.run(main_async())
    except (KeyboardInterrupt, EOFError):
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
