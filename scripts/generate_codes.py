import argparse
import asyncio
from pathlib import Path

from storefront.core.database import SessionLocal, engine, init_models
from storefront.services.redemption_service import generate_codes


async def _run(args) -> list[str]:
    await init_models(engine)
    try:
        return await generate_codes(SessionLocal, args.count, args.paid, args.bonus, args.prefix)
    finally:
        await engine.dispose()


def main() -> int:
    ap = argparse.ArgumentParser(description="Mint redemption codes")
    ap.add_argument("--count", type=int, default=10, help="how many codes to mint (default: 10)")
    ap.add_argument("--paid", type=int, required=True, help="paid credits per code")
    ap.add_argument("--bonus", type=int, default=0, help="bonus credits per code (default: 0)")
    ap.add_argument("--prefix", default="", help="optional code prefix, e.g. VIP-")
    ap.add_argument("--out", default="", help="write codes to this file instead of stdout")
    args = ap.parse_args()

    codes = asyncio.run(_run(args))

    if args.out:
        Path(args.out).write_text("\n".join(codes) + "\n", encoding="utf-8")
        print(f"Wrote {len(codes)} codes to {args.out}")
    else:
        for c in codes:
            print(c)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
