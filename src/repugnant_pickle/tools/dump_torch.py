"""List the tensors of a PyTorch ZIP checkpoint with their absolute offsets."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..common import VERBOSE_ENV_VAR, PickleError, env_verbose
from ..torch import OffsetUnit, ResolverSettings, TensorDescriptor, TorchArchive, total_bytes

logger = logging.getLogger(__name__)


@dataclass
class CheckpointSummary:
    source: Path
    metadata_entry: str
    tensors: List[TensorDescriptor] = field(default_factory=list)
    exported: Optional[Path] = None

    @property
    def tensor_count(self) -> int:
        return len(self.tensors)

    @property
    def total_bytes(self) -> int:
        return total_bytes(self.tensors)

    def to_dict(self) -> Dict[str, object]:
        return {
            "source": str(self.source),
            "metadata_entry": self.metadata_entry,
            "tensors": [descriptor.to_dict() for descriptor in self.tensors],
            "exported": str(self.exported) if self.exported is not None else None,
            "total_bytes": self.total_bytes,
        }


def inspect_checkpoint(path: Path, settings: Optional[ResolverSettings] = None) -> CheckpointSummary:
    with TorchArchive(path, settings) as archive:
        return CheckpointSummary(
            source=path,
            metadata_entry=archive.metadata_entry,
            tensors=archive.tensors(),
        )


def format_summary(summary: CheckpointSummary) -> str:
    """Return a human-friendly table of the resolved tensors."""

    header = f"Checkpoint: {summary.source}"
    lines = [header, "=" * len(header)]
    lines.append(f"Metadata: {summary.metadata_entry}")
    if summary.exported is not None:
        lines.append(f"Exported: {summary.exported}")

    lines.append("")
    if summary.tensors:
        name_width = max(len("Name"), *(len(item.name) for item in summary.tensors))
        dtype_width = max(len("DType"), *(len(item.tensor_type.value) for item in summary.tensors))
        header_row = (
            f"  {'Name'.ljust(name_width)}  {'DType'.ljust(dtype_width)}  "
            f"{'Shape':<16}  {'Offset':>12}  {'Bytes':>10}  Device"
        )
        lines.append(header_row)
        lines.append("  " + "-" * (len(header_row) - 2))
        for item in summary.tensors:
            if item.shape:
                shape_text = " × ".join(str(dim) for dim in item.shape)
            else:
                shape_text = "scalar"
            lines.append(
                "  "
                + f"{item.name.ljust(name_width)}  {item.tensor_type.value.ljust(dtype_width)}  "
                + f"{shape_text:<16}  {item.absolute_offset:>12}  {item.nbytes:>10}  {item.device}"
            )
    else:
        lines.append("  <no tensors found>")

    lines.append("")
    lines.append(f"Total tensors: {summary.tensor_count} | Total payload bytes: {summary.total_bytes}")
    return "\n".join(lines)


def render_summary(summary: CheckpointSummary, *, format: str = "table") -> str:
    """Serialise ``summary`` as ``"table"`` or ``"json"`` (case-insensitive)."""

    normalized = format.lower()
    if normalized == "table":
        return format_summary(summary)
    if normalized == "json":
        return json.dumps(summary.to_dict(), indent=2, sort_keys=True)
    raise ValueError(f"Unsupported summary format: {format}")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Resolve the tensors of a PyTorch ZIP checkpoint to absolute byte "
            "offsets without executing its pickle."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("path", type=Path, help="Checkpoint written by torch.save")
    parser.add_argument(
        "--format",
        choices=("table", "json"),
        default="table",
        help="Output format for the tensor listing",
    )
    parser.add_argument(
        "--offset-unit",
        choices=[unit.value for unit in OffsetUnit],
        default=OffsetUnit.ELEMENTS.value,
        help="Unit of the storage_offset argument of rebuild calls",
    )
    parser.add_argument(
        "--export-safetensors",
        type=Path,
        default=None,
        help="Also copy every tensor into this .safetensors file",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the listing to this file instead of stdout",
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
    args.settings = ResolverSettings(offset_unit=OffsetUnit(args.offset_unit))
    return args


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    try:
        summary = inspect_checkpoint(args.path, args.settings)
        if args.export_safetensors is not None:
            from ..store import export_safetensors

            destination = args.export_safetensors.expanduser()
            export_safetensors(args.path, destination, settings=args.settings)
            summary.exported = destination
    except ModuleNotFoundError as exc:
        print(f"repugnant-pickle-torch: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except OSError as exc:
        print(f"repugnant-pickle-torch: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except PickleError as exc:
        print(f"repugnant-pickle-torch: {type(exc).__name__}: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except ValueError as exc:
        message = str(exc) or f"{type(exc).__name__} while resolving {args.path}"
        print(f"repugnant-pickle-torch: {message}", file=sys.stderr)
        raise SystemExit(1) from exc

    rendered = render_summary(summary, format=args.format)
    if args.output is not None:
        output_path = args.output.expanduser()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        text = rendered if rendered.endswith("\n") else rendered + "\n"
        output_path.write_text(text, encoding="utf-8")
        logger.info("Wrote tensor listing to %s", output_path)
    else:
        print(rendered)


if __name__ == "__main__":
    main()
