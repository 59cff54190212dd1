"""Entry point for `python -m waswarm` / `waswarm`.

Subcommands:
    waswarm                 Run the service (default)
    waswarm pair [NUMBER]   Pair a number with a pairing code, then run
"""

from __future__ import annotations

import argparse
import asyncio
import sys


async def _ask_number() -> str:
    return await asyncio.to_thread(input, "Phone number to pair (with country code): ")


def _run(pair_number: str | None = None, *, prompt: bool = False) -> None:
    from waswarm.app import WaswarmApp

    async def _main() -> None:
        number = pair_number
        if prompt and not number:
            number = (await _ask_number()).strip()
            if not number:
                print("Error: no number given", file=sys.stderr)
                sys.exit(2)
        await WaswarmApp().run(pair_number=number)

    asyncio.run(_main())


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="waswarm",
        description="Multi-account WhatsApp automation",
    )
    sub = parser.add_subparsers(dest="command")
    pair = sub.add_parser("pair", help="Pair a number with a pairing code, then run")
    pair.add_argument("number", nargs="?", help="Phone number with country code")

    args = parser.parse_args()

    match args.command:
        case "pair":
            _run(args.number, prompt=True)
        case _:
            _run()


if __name__ == "__main__":
    main()
