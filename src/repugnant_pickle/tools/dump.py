"""Print the inert value graph of a pickle file."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import zipfile
from pathlib import Path
from typing import Sequence

from ..common import MAX_DEPTH, MAX_NODES, VERBOSE_ENV_VAR, PickleError, env_verbose
from ..container import ZipContainer
from ..machine import DecoderSettings, loads
from ..value import Value, count_nodes, format_value, to_builtin

logger = logging.getLogger(__name__)


def read_payload(path: Path, entry: str | None = None) -> bytes:
    """Return the pickle bytes of ``path`` or of one of its ZIP entries."""

    if entry is None and not zipfile.is_zipfile(path):
        return path.read_bytes()
    with ZipContainer(path) as container:
        if entry is None:
            entry = container.find_entry("data.pkl")
        elif entry not in container.names():
            entry = container.find_entry(entry)
        logger.info("Decoding entry %s of %s", entry, path)
        return container.read_entry(entry)


def render_value(
    value: Value,
    *,
    format: str = "text",
    max_depth: int = MAX_DEPTH,
    max_nodes: int = MAX_NODES,
) -> str:
    normalized = format.lower()
    if normalized == "text":
        return format_value(value, max_depth=max_depth, max_nodes=max_nodes)
    if normalized == "json":
        return json.dumps(to_builtin(value, max_depth=max_depth, max_nodes=max_nodes), indent=2)
    raise ValueError(f"Unsupported output format: {format}")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Decode a pickle without executing it and print the resulting value tree. "
            "ZIP checkpoints are accepted; their data.pkl entry is decoded."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("path", type=Path, help="Pickle file or ZIP checkpoint to decode")
    parser.add_argument(
        "--entry",
        default=None,
        help="Entry inside a ZIP container to decode instead of data.pkl",
    )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=MAX_DEPTH,
        help="Stop expanding the value tree beyond this depth",
    )
    parser.add_argument(
        "--max-nodes",
        type=int,
        default=MAX_NODES,
        help="Stop expanding the value tree after this many nodes",
    )
    parser.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format for the decoded value",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print node counts per value kind after the tree",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help=f"Enable verbose logging (can also set {VERBOSE_ENV_VAR}=1)",
    )
    parser.add_argument(
        "--quiet",
        dest="verbose",
        action="store_false",
        help="Disable verbose logging",
    )
    args = parser.parse_args(argv)
    args.path = args.path.expanduser()
    if args.verbose is None:
        args.verbose = env_verbose()
    if args.max_depth <= 0:
        parser.error("--max-depth must be a positive integer")
    if args.max_nodes <= 0:
        parser.error("--max-nodes must be a positive integer")
    return args


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    settings = DecoderSettings(max_depth=args.max_depth, max_nodes=args.max_nodes)
    try:
        payload = read_payload(args.path, args.entry)
        value = loads(payload, settings=settings)
    except OSError as exc:
        print(f"repugnant-pickle-dump: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except PickleError as exc:
        print(f"repugnant-pickle-dump: {type(exc).__name__}: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    if args.format == "text":
        print(f"* Dumping: {args.path}\n")
    print(
        render_value(
            value,
            format=args.format,
            max_depth=settings.max_depth,
            max_nodes=settings.max_nodes,
        )
    )
    if args.stats:
        counts = count_nodes(
            value, max_depth=settings.max_depth, max_nodes=settings.max_nodes
        )
        print("")
        for name in sorted(counts):
            print(f"  {name:<10} {counts[name]:>8}")


if __name__ == "__main__":
    main()
