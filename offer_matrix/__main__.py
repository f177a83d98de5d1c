"""CLI entry point for the offer matrix.

Usage:
    # Start the sidecar API server for a set of documents or a job
    python -m offer_matrix serve --documents bta.pdf ergo.pdf
    OFFER_MATRIX_BACKEND_URL=https://extract.example.com python -m offer_matrix serve --job job-123

    # Render offer groups (JSON list as returned by /offers/by-documents)
    python -m offer_matrix render offers.json
    python -m offer_matrix render offers.json --hidden-token <hf token>

    # Export to Excel
    python -m offer_matrix export offers.json matrix.xlsx

    # Preference tokens
    python -m offer_matrix prefs encode --order a::b::c --hidden "Sporta ārsts"
    python -m offer_matrix prefs decode <token>
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from . import prefs
from .errors import DecodeError
from .matrix import OfferMatrix
from .models import OfferGroup, ViewPreferences

_GROUPS = TypeAdapter(list[OfferGroup])


def _load_matrix(args: argparse.Namespace) -> OfferMatrix:
    path = Path(args.offers)
    if not path.exists():
        print(f"Error: Path not found: {path}", file=sys.stderr)
        sys.exit(1)
    try:
        groups = _GROUPS.validate_python(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        print(f"Error: {path} is not a list of offer groups: {e}", file=sys.stderr)
        sys.exit(1)

    stored = prefs.decode(args.prefs_token) if args.prefs_token else None
    matrix = OfferMatrix.from_groups(groups, stored)
    if args.hidden_token:
        matrix.set_hidden(prefs.decode_hidden(args.hidden_token))
    return matrix


def _cmd_serve(args: argparse.Namespace) -> None:
    """Start the sidecar API server."""
    import uvicorn

    from .api import create_app
    from .config import get_settings

    settings = get_settings()
    app = create_app(settings, document_ids=args.documents or (), job_id=args.job)

    uvicorn.run(
        app,
        host=settings.sidecar_host,
        port=settings.sidecar_port,
        log_level="info",
    )


def _cmd_render(args: argparse.Namespace) -> None:
    """Print the matrix as text."""
    from .export import render_text

    matrix = _load_matrix(args)
    print(render_text(matrix.view()))

    failures = [c for c in matrix.columns if c.is_error]
    if failures:
        print()
        print(f"{len(failures)} document(s) failed:")
        for column in failures:
            print(f"  {column.source_file}: {column.error}")


def _cmd_export(args: argparse.Namespace) -> None:
    """Write the matrix to an .xlsx file."""
    from .export import export_xlsx

    matrix = _load_matrix(args)
    out = export_xlsx(matrix.view(), args.output)
    print(f"Wrote {len(matrix)} column(s) to {out}")


def _cmd_prefs(args: argparse.Namespace) -> None:
    """Encode or decode a preference token."""
    if args.prefs_command == "encode":
        token = prefs.encode(
            ViewPreferences(order=args.order or [], hidden=frozenset(args.hidden or []))
        )
        print(token)
        return

    try:
        decoded = prefs.decode_strict(args.token)
    except DecodeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(prefs.to_snapshot(decoded), ensure_ascii=False, indent=2))


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(
        prog="offer_matrix",
        description="Offer Matrix — compare extracted insurance offers side by side",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the sidecar API server")
    serve_parser.add_argument(
        "--documents",
        nargs="*",
        help="Source document ids to compare",
    )
    serve_parser.add_argument("--job", help="Extraction job id to follow until done")

    # render / export share the input options
    for name, help_text in (
        ("render", "Print the matrix for an offers JSON file"),
        ("export", "Export the matrix for an offers JSON file to .xlsx"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("offers", help="Path to a JSON list of offer groups")
        if name == "export":
            sub.add_argument("output", help="Destination .xlsx path")
        sub.add_argument(
            "--hidden-token",
            help=f"Hidden features token (the '{prefs.SHARE_QUERY_PARAM}' share parameter)",
        )
        sub.add_argument("--prefs-token", help="Full view preference token")

    # prefs
    prefs_parser = subparsers.add_parser("prefs", help="Encode/decode preference tokens")
    prefs_sub = prefs_parser.add_subparsers(dest="prefs_command", required=True)
    encode_parser = prefs_sub.add_parser("encode", help="Build a token")
    encode_parser.add_argument("--order", nargs="*", help="Column identities in order")
    encode_parser.add_argument("--hidden", nargs="*", help="Hidden feature keys")
    decode_parser = prefs_sub.add_parser("decode", help="Show a token's contents")
    decode_parser.add_argument("token")

    args = parser.parse_args()

    if args.command == "serve":
        _cmd_serve(args)
    elif args.command == "render":
        _cmd_render(args)
    elif args.command == "export":
        _cmd_export(args)
    elif args.command == "prefs":
        _cmd_prefs(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
