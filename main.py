#!/usr/bin/env python3
"""
Clause Decision CLI

Inspect and drive the clause decision log from the terminal: ingest clause
baselines from the analysis pipeline, submit reviewer decisions, and print
projections, history and contract summaries.

Usage:
    python main.py load <baselines.json>
    python main.py projection <clause_id>
    python main.py history <clause_id>
    python main.py submit <clause_id> <ACTION_TYPE> --actor <id> [--role <role>]
                   [--finding <finding_id>] [--payload '<json>'] [--loaded-at <iso>]
    python main.py summary <contract_id>
    python main.py track-changes <contract_id>
    python main.py finalize <contract_id> --actor <id>

The database path comes from CLAUSE_DECISIONS_DB (default: decisions.db).
"""

import json
import sys
from pathlib import Path

from rich.console import Console

from clause_decisions.config import configure_logging
from clause_decisions.engine import DecisionEngine
from clause_decisions.errors import ReviewError
from clause_decisions.models import ClauseBaseline, DecisionCommand, parse_timestamp
from clause_decisions.output import print_contract_summary, print_history, print_projection

USAGE = __doc__.split("Usage:")[1].split("The database")[0]


def _parse_options(args: list[str]) -> tuple[list[str], dict]:
    positional, options = [], {}
    i = 0
    while i < len(args):
        if args[i].startswith("--") and i + 1 < len(args):
            options[args[i][2:]] = args[i + 1]
            i += 2
        else:
            positional.append(args[i])
            i += 1
    return positional, options


def load_baselines(engine: DecisionEngine, path: Path) -> int:
    """Ingest {"contractId": ..., "clauses": [...]} as produced by the analysis pipeline."""
    data = json.loads(path.read_text())
    contract_id = data["contractId"]
    saved = engine.store.save_baselines(
        [ClauseBaseline.from_dict(contract_id, clause) for clause in data.get("clauses", [])]
    )
    return len(saved)


def run(args: list[str], engine: DecisionEngine = None, console: Console = None) -> int:
    console = console or Console()
    positional, options = _parse_options(args)
    if not positional:
        console.print(f"Usage:{USAGE}")
        return 0

    engine = engine or DecisionEngine()
    command, rest = positional[0], positional[1:]

    if command == "load" and rest:
        count = load_baselines(engine, Path(rest[0]))
        console.print(f"Loaded {count} clause baseline(s) from {rest[0]}")
    elif command == "projection" and rest:
        print_projection(engine.get_projection(rest[0]), console)
    elif command == "history" and rest:
        print_history(engine.list_decision_history(rest[0]), console)
    elif command == "submit" and len(rest) >= 2:
        result = engine.submit(DecisionCommand(
            clause_id=rest[0],
            action_type=rest[1].upper(),
            actor_id=options.get("actor", ""),
            actor_role=options.get("role", "reviewer"),
            payload=json.loads(options.get("payload", "{}")),
            finding_id=options.get("finding"),
            clause_updated_at_when_loaded=parse_timestamp(options.get("loaded-at")),
        ))
        console.print(f"Decision [bold]{result.decision.id}[/bold] appended.")
        if result.conflict_warning:
            console.print(f"[bold yellow]Warning:[/bold yellow] {result.conflict_warning.message}")
        print_projection(result.projection, console)
    elif command == "summary" and rest:
        print_contract_summary(engine.contract_summary(rest[0]), console)
    elif command == "track-changes" and rest:
        changes = engine.get_track_changes_for_contract(rest[0])
        console.print_json(json.dumps([c.to_dict() for c in changes]))
    elif command == "finalize" and rest:
        result = engine.finalize_contract(rest[0], options.get("actor", ""))
        console.print(f"Contract {result['id']} finalized at {result['finalizedAt']}")
    else:
        console.print(f"Usage:{USAGE}")
        return 1
    return 0


def main() -> None:
    configure_logging()
    try:
        code = run(sys.argv[1:])
    except ReviewError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except (json.JSONDecodeError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
