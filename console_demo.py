"""
Offline console demo: chat with the real controller in the terminal.

Uses the seed catalog, in-memory session storage, and the local booking
finalizer. Without OPENAI_API_KEY every match comes from the keyword
fallback and the score-based selection, which is exactly the degraded
path the API takes when the model service is down.

Usage:
    python console_demo.py
    python console_demo.py --scenario booking
    python console_demo.py --scenario interrupt
"""

import argparse
import asyncio
import logging
from typing import Optional, Sequence

from tutor_scheduler.config import settings
from tutor_scheduler.conversation.controller import ConversationController
from tutor_scheduler.conversation.state_machine import conversation_state
from tutor_scheduler.matching.reasoner import MatchReasoner
from tutor_scheduler.matching.retriever import CandidateRetriever
from tutor_scheduler.schemas.session_schema import Session
from tutor_scheduler.session.store import InMemoryKeyValueStore, SessionStore
from tutor_scheduler.tools.booking import InMemoryBookingFinalizer
from tutor_scheduler.tools.catalog import InMemoryCatalog
from tutor_scheduler.tools.model_client import OpenAIModelClient
from tutor_scheduler.tools.similarity_index import InMemorySimilarityIndex

BLUE = "\033[94m"
GREEN = "\033[92m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

SESSION_ID = "console"


class ConsoleSession:
    """Drives one chat session through the conversation controller."""

    # Pre-scripted scenarios for --scenario flag
    SCENARIOS: dict[str, list[str]] = {
        "booking": [
            "hi",
            "I need help with Python on Monday at 10:00",
            "yes",
            "Name: Ada Lovelace, Email: ada@mail.ccsf.edu",
            "S12345678",
            "yes",
            "110A, 131B",
            "A programming assignment on nested loops",
            "skip",
        ],
        "others": [
            "Can someone help me with Java?",
            "show me other tutors",
            "Chris",
            "Monday 10:30",
            "cancel",
        ],
        "interrupt": [
            "I need help with Debugging on Wednesday",
            "book it",
            "Name: Sam Lee, Email: sam.lee@gmail.com",
            "sam.lee@mail.ccsf.edu",
            "abc",
            "I need help with SQL instead",
            "no",
            "skip",
            "actually find me a SQL tutor",
            "yes",
        ],
    }

    MAX_INPUT_LENGTH = 500

    def __init__(self) -> None:
        catalog = InMemoryCatalog()
        model_client = OpenAIModelClient(settings.model)
        self.store = SessionStore(InMemoryKeyValueStore(), flush_delay=0)
        self.controller = ConversationController(
            store=self.store,
            catalog=catalog,
            retriever=CandidateRetriever(catalog, model_client, InMemorySimilarityIndex()),
            reasoner=MatchReasoner(model_client),
            finalizer=InMemoryBookingFinalizer(),
        )
        self._semantic = bool(settings.model.api_key)

    def assistant_say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[Assistant]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def _log_state(self, session: Session, rule: Optional[str] = None) -> None:
        state = conversation_state(session)
        parts = [f"State: {state.value}"]
        if session.booking_draft is not None:
            parts.append(f"step: {session.booking_draft.step.value}")
        if rule:
            parts.append(f"rule: {rule}")
        self.system_log(", ".join(parts))

    async def _start(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  TUTOR SCHEDULER - {title}{RESET}")
        print(f"{BOLD}  Catalog: {settings.catalog.name}{RESET}")
        print(f"{BOLD}  Matching: {'semantic' if self._semantic else 'keyword (offline)'}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()
        if self._semantic:
            await self.controller.retriever.index_catalog()
        session = await self.controller.get_session(SESSION_ID)
        self.assistant_say(session.messages[0].content)

    async def _process_input(self, text: str) -> None:
        result = await self.controller.handle_turn(SESSION_ID, text)
        self.assistant_say(result.reply)
        self._log_state(result.session, result.rule)

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        await self._start(f"Scenario: {scenario}")
        for step in steps:
            print(f"\n{BLUE}[Student] {RESET}{step}")
            await self._process_input(step)

        await self.store.close()
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  Scenario '{scenario}' complete.{RESET}")
        print(f"{DIM}  Session writes: {self.store.coalescer.writes}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    async def run(self) -> None:
        await self._start("Console Demo (type 'quit' to exit)")
        while True:
            user_input = (await asyncio.to_thread(input, f"\n{BLUE}[Student] {RESET}")).strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                print(f"\n{DIM}Session ended.{RESET}")
                break
            if len(user_input) > self.MAX_INPUT_LENGTH:
                self.assistant_say("That was quite long. Could you keep it brief for me?")
                continue
            await self._process_input(user_input)
        await self.store.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Show matcher and controller logs"
    )
    args = parser.parse_args(argv)
    if not args.verbose:
        logging.getLogger("tutor_scheduler").setLevel(logging.ERROR)

    session = ConsoleSession()
    if args.scenario:
        asyncio.run(session.run_scenario(args.scenario))
    else:
        asyncio.run(session.run())


if __name__ == "__main__":
    main()
