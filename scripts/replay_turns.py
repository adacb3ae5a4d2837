#!/usr/bin/env python3
"""
Replay a scripted call through the turn engine.

Runs each caller line through TurnService (in-memory state store, tenant config
from CONFIG_DIR) and prints the agent reply, action and booking cursor.
Without --script it replays the built-in booking call and asserts its outcome.

Usage:
  python scripts/replay_turns.py
  python scripts/replay_turns.py --tenant demo --script calls/gas_leak.txt --show-state
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.frontdesk.config import ConfigError, init_config
from src.frontdesk.engine import TurnAction
from src.frontdesk.errors import TenantConfigError
from src.frontdesk.models import Mode
from src.frontdesk.service import TurnRequest, TurnService
from src.frontdesk.state import decode_state
from src.frontdesk.store import InMemoryStateStore

DEFAULT_CALL = [
    "Hi, my name is Mark, I'm having AC problems",
    "My last name is Gonzalez",
    "555-123-4567",
    "123 Main Street",
    "tomorrow morning",
    "yes",
]


def _load_script(path: str) -> list[str]:
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.startswith("#")]


async def replay(
    lines: list[str],
    *,
    tenant_id: str,
    session_id: str,
    caller_phone: str | None,
    mode: Mode | None,
    show_state: bool,
) -> list[TurnAction]:
    config = init_config()
    service = TurnService.from_config(config, store=InMemoryStateStore())
    actions = []
    try:
        for number, line in enumerate(lines, start=1):
            response = await service.handle_turn(
                TurnRequest(
                    tenant_id=tenant_id,
                    session_id=session_id,
                    utterance=line,
                    caller_phone=caller_phone,
                    mode=mode,
                )
            )
            actions.append(response.action)
            print(f"\n[{number}] caller: {line}")
            print(f"    agent:  {response.reply_text or '(no match)'}")
            print(f"    action: {response.action.value}", end="")
            if response.escalation_reason:
                print(f"  reason: {response.escalation_reason}", end="")
            print()

            if response.next_state_blob and show_state:
                state = decode_state(response.next_state_blob)
                cursor = state.cursor()
                if cursor is not None:
                    print(f"    cursor: {cursor.flow.value}/{cursor.step_id} attempts={cursor.attempts} flags={cursor.flags()}")
                print(f"    slots:  {state.slot_values()}")
    finally:
        await service.close()
    return actions


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay caller lines through the turn engine.")
    parser.add_argument("--tenant", default="demo", help="Tenant id under CONFIG_DIR/tenants")
    parser.add_argument("--session", default="replay-1", help="Session id")
    parser.add_argument("--script", help="Text file with one caller line per row")
    parser.add_argument("--caller-phone", help="Caller ID to seed the phone slot")
    parser.add_argument("--mode", choices=[m.value for m in Mode], help="Initial mode")
    parser.add_argument("--show-state", action="store_true", help="Print cursor and slots per turn")
    args = parser.parse_args()

    lines = _load_script(args.script) if args.script else DEFAULT_CALL

    try:
        actions = asyncio.run(
            replay(
                lines,
                tenant_id=args.tenant,
                session_id=args.session,
                caller_phone=args.caller_phone,
                mode=Mode(args.mode) if args.mode else None,
                show_state=args.show_state,
            )
        )
    except (ConfigError, TenantConfigError) as e:
        print(f"[ERR] {e}")
        return 1

    if not args.script:
        assert actions[-1] == TurnAction.BOOKING_COMPLETE, actions
        assert TurnAction.ESCALATE not in actions
        print("\n[OK] Booking call completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
