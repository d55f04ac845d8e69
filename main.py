#!/usr/bin/env python3
"""
CARD LOGIC MAIN - Minimal Entry Point

Loads a project description, compiles it and runs one command:

Usage:
    python main.py project.yaml --query tree
    python main.py project.yaml --query card --param cardKey=proj_1
    python main.py project.yaml --check transition proj_1 start
    python main.py project.yaml --transition proj_1 start
    python main.py project.yaml --program card --param cardKey=proj_1
"""
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

from core.ontology import CardEngineError
from infrastructure.config import EngineConfig
from orchestration.engine import ProjectSession


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(name)-20s | %(levelname)-7s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger("CardLogic.Main")


def parse_params(pairs: Optional[List[str]]) -> Dict[str, str]:
    params = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"Query parameter must be NAME=VALUE, got '{pair}'")
        params[name] = value
    return params


async def main(args) -> int:
    config = EngineConfig.load(args.config)
    logging.getLogger().setLevel(logging.DEBUG if args.verbose else config.log_level)

    session = ProjectSession.from_yaml(args.project, config=config)
    params = parse_params(args.param)
    try:
        report = await session.generate()
        logger.info(f"Compiled {len(report.updated)} programs")

        if args.query:
            response = await session.run_query(args.query, params)
            print(json.dumps(response.model_dump(by_alias=True, mode="json"), indent=2))
            return 1 if response.error else 0

        if args.program:
            print(session.engine.logic_program(args.program, params))
            return 0

        if args.check:
            action, card_key, *rest = args.check
            await session.check_permission(action, card_key, rest[0] if rest else None)
            logger.info(f"ALLOWED: {action} on {card_key}")
            return 0

        if args.transition:
            card_key, transition = args.transition
            card = await session.card_transition(card_key, transition)
            logger.info(f"{card.key} is now in state '{card.workflow_state}'")
            return 0

        return 0
    except CardEngineError as e:
        logger.error(f"{type(e).__name__} ({e.status_code}): {e}")
        return 1
    finally:
        session.close()


def cli():
    """Command line interface."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Card Logic - calculation engine for card projects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py project.yaml --query tree
  python main.py project.yaml --check editField proj_1 priority
        """
    )
    parser.add_argument("project", help="Project YAML file")
    parser.add_argument(
        "-c", "--config",
        default=".cardlogic/engine.yaml",
        help="Engine configuration file"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    command = parser.add_mutually_exclusive_group()
    command.add_argument("--query", help="Run a named query (tree, card)")
    command.add_argument("--program", help="Print the full logic program of a query")
    command.add_argument(
        "--check",
        nargs="+",
        metavar="ARG",
        help="ACTION CARD_KEY [PARAM]: check a permission"
    )
    command.add_argument(
        "--transition",
        nargs=2,
        metavar=("CARD_KEY", "TRANSITION"),
        help="Execute a workflow transition"
    )
    parser.add_argument(
        "-p", "--param",
        action="append",
        help="Query parameter NAME=VALUE (repeatable)"
    )

    args = parser.parse_args()
    if args.check and len(args.check) < 2:
        parser.error("--check needs ACTION and CARD_KEY")

    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    cli()
