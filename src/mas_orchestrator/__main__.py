"""Entry point for `python -m mas_orchestrator` and the `mas-orchestrator` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Mapping

from mas_orchestrator.models import Visibility
from mas_orchestrator.service import OrchestratorService, RunResult
from mas_orchestrator.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a build request through the coordinator/architect/QC pipeline")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--request-text", default=None, help="Inline build request text")
    source.add_argument("--request-file", type=Path, default=None, help="Path to a file holding the build request")
    parser.add_argument(
        "--conversation-id",
        default=None,
        help="Conversation (checkpoint thread) id; a new one is generated when omitted",
    )
    parser.add_argument("--language", default="typescript", help="Target implementation language")
    parser.add_argument("--security-level", default="normal", choices=["normal", "high", "strict"])
    parser.add_argument("--test-level", default="standard", choices=["none", "standard", "thorough"])
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Root directory patches are applied to (default: cwd)",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume the conversation from its last checkpoint instead of starting a new run",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_request(*, request_file: Path | None, request_text: str | None) -> str:
    if request_text is not None:
        trimmed = request_text.strip()
        if not trimmed:
            raise ValueError("request_text must be non-empty")
        return trimmed
    if request_file is None:
        raise ValueError("One of --request-text or --request-file is required")
    if not request_file.is_file():
        raise FileNotFoundError(f"Requested input file does not exist: {request_file}")
    return request_file.read_text(encoding="utf-8")


class PrintEventSink:
    """Prints user-visible events to stdout, one line each."""

    def write(self, event: Mapping[str, Any]) -> None:
        if event.get("visibility", Visibility.USER.value) != Visibility.USER.value:
            return
        print(f"[{event.get('stage')}] {event.get('agent')}: {event.get('summary')}")


async def _run(args: argparse.Namespace, request: str | None, conversation_id: str) -> RunResult:
    service = OrchestratorService.from_settings(RuntimeSettings.from_env(), repo_root=Path.cwd())
    try:
        if args.resume:
            return await service.resume(conversation_id, sink=PrintEventSink())
        assert request is not None
        return await service.process_request(
            request,
            conversation_id,
            {"language": args.language, "security_level": args.security_level, "test_level": args.test_level},
            sink=PrintEventSink(),
        )
    finally:
        await service.aclose()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Settings read the workspace root from the environment.
    if args.workspace_root is not None:
        workspace_root = args.workspace_root.resolve()
        workspace_root.mkdir(parents=True, exist_ok=True)
        os.environ["MAS_WORKSPACE_ROOT"] = str(workspace_root)

    if args.resume and not args.conversation_id:
        logging.error("--resume requires --conversation-id")
        return 1
    conversation_id = args.conversation_id or f"conv-{uuid.uuid4().hex[:12]}"

    request: str | None = None
    if not args.resume:
        try:
            request = load_request(request_file=args.request_file, request_text=args.request_text)
        except (OSError, ValueError) as exc:
            logging.error("Unable to load request input: %s", exc)
            return 1

    try:
        result = asyncio.run(_run(args, request, conversation_id))
    except (LookupError, ValueError) as exc:
        logging.error("%s", exc)
        return 1

    print(f"conversation_id={result.conversation_id}")
    print(f"outcome={result.outcome}")
    if result.response:
        print(result.response)
    return 0 if result.completed else 1


if __name__ == "__main__":
    raise SystemExit(main())
