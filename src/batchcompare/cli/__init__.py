"""
batchcompare CLI - compare batch-effect estimators on public RNA-seq data.

Commands:
    batchcompare run    - SVA / PCA / RUVr / RUVg comparison on montpick
"""

import argparse
import sys
from typing import List, Optional

from batchcompare import __version__


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for batchcompare."""
    parser = argparse.ArgumentParser(
        prog="batchcompare",
        description="Compare surrogate variable, PCA and RUV batch estimators",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run           Compare batch estimators on the montpick dataset

Examples:
  batchcompare run --output results/montpick
  batchcompare run --config analysis.yaml --skip-unbalanced
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from batchcompare.cli import run
    run.register_parser(subparsers)

    raw_args = list(args) if args is not None else sys.argv[1:]
    parsed_args = parser.parse_args(raw_args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    parsed_args.cli_args = raw_args[1:]
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
