#!/usr/bin/env python3
"""Inspect or merge serialized LoRA adapter files.

Usage:
    # Summarize one or more adapter files:
    python scripts/inspect_adapter.py summary adapters/u1.lora adapters/u2.lora

    # Merge adapters into a new file (weights default to uniform):
    python scripts/inspect_adapter.py merge --output merged.lora a.lora b.lora --weights 0.3 0.7

Environment Variables:
    LORA_LEARNING_RATE: Learning rate recorded on merged adapters
    LOG_LEVEL, LOG_JSON: Logging configuration
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def summarize(path: Path) -> dict:
    """Decode an adapter file and describe it without dumping the matrices."""
    from lorapersona.service.kernels import l2_norm
    from lorapersona.storage.codec import decode_adapter
    from lorapersona.storage.models import format_timestamp

    adapter = decode_adapter(path.read_bytes())
    return {
        "path": str(path),
        "user_id": adapter.user_id,
        "version": adapter.version,
        "rank": adapter.rank,
        "embedding_dim": adapter.embedding_dim,
        "scaling_factor": adapter.scaling_factor,
        "matrix_a_norm": l2_norm(adapter.matrix_a),
        "matrix_b_norm": l2_norm(adapter.matrix_b),
        "parameters": adapter.parameter_count,
        "has_fisher": adapter.has_fisher,
        "updated_at": format_timestamp(adapter.updated_at),
        "metadata": adapter.metadata.to_dict(),
        "bytes": path.stat().st_size,
    }


def merge_files(paths: List[Path], output: Path, weights: Optional[List[float]] = None) -> dict:
    from lorapersona.service.engine import create_engine

    engine = create_engine()
    adapters = [engine.deserialize_adapter(p.read_bytes()) for p in paths]
    merged = engine.merge_adapters(adapters, weights)
    output.write_bytes(engine.serialize_adapter(merged))
    return summarize(output)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Inspect or merge serialized LoRA adapters",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    summary = sub.add_parser("summary", help="Describe adapter files")
    summary.add_argument("paths", nargs="+", type=Path)

    merge = sub.add_parser("merge", help="Merge adapter files into one")
    merge.add_argument("paths", nargs="+", type=Path)
    merge.add_argument("--output", required=True, type=Path)
    merge.add_argument("--weights", nargs="+", type=float, default=None)

    args = parser.parse_args(argv)

    from lorapersona.logging import get_logger, set_correlation_id
    from lorapersona.service.errors import EngineError

    set_correlation_id()
    get_logger("inspect_adapter").debug(
        "inspect_adapter_started", command=args.command, files=len(args.paths)
    )
    try:
        if args.command == "summary":
            result = [summarize(p) for p in args.paths]
        else:
            result = merge_files(args.paths, args.output, args.weights)
    except (EngineError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
