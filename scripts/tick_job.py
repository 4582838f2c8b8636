#!/usr/bin/env python3
"""
tick_job.py
Drives a tick-model job to completion by calling its tick endpoint on a fixed
interval. This is the "scheduler" for deployments that cannot keep a
background loop alive; run exactly one of these per job key.

Examples:
  # Queue a webhook job, then tick it every 2 seconds until it finishes
  python scripts/tick_job.py --job-type webhook --site-id my-site \
      --submit-emails "a@x.com, b@x.com" --webhook-url https://example.com/hook

  # Keep ticking an already queued deletion job
  python scripts/tick_job.py --job-type deletion --site-id my-site --interval 3
"""

import sys
import json
import asyncio
import logging
import argparse
from typing import Any, Dict, Optional

import httpx

TERMINAL = {"complete", "canceled", "failed"}


# ---------- Logging ----------
def setup_logging(verbosity: int) -> None:
    level = logging.WARNING if verbosity == 0 else logging.INFO if verbosity == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

log = logging.getLogger("tick_job")


# ---------- API ----------
def job_url(base_url: str, job_type: str, site_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/tick-jobs/{job_type}/{site_id}"


async def submit(client: httpx.AsyncClient, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
    response = await client.post(url, json=body)
    response.raise_for_status()
    return response.json()


async def tick_until_done(
        client: httpx.AsyncClient,
        url: str,
        interval: float,
        max_ticks: Optional[int] = None
) -> Dict[str, Any]:
    """Tick until the job reaches a terminal status or stops being ticked"""
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        response = await client.post(f"{url}/tick")
        if response.status_code == 409:
            # Another writer touched the record; the next tick re-reads it.
            log.warning("Tick conflict: %s", response.json().get("error", {}).get("message"))
        else:
            response.raise_for_status()
            data = response.json()
            log.info("[%s] %s/%s %s", data["status"], data["processed"], data["total"], data["message"])
            if data["status"] in TERMINAL:
                return data
        ticks += 1
        await asyncio.sleep(interval)

    status = await client.get(url)
    status.raise_for_status()
    return status.json()


# ---------- CLI ----------
def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Advance a tick-model bulk job until it finishes.")
    parser.add_argument("--base-url", default="http://localhost:8000", help="Bulk operations API base URL.")
    parser.add_argument("--job-type", required=True, choices=["registration", "deletion", "webhook"])
    parser.add_argument("--site-id", required=True, help="Tenant / site identifier.")
    parser.add_argument("--interval", type=float, default=2.0, help="Seconds between ticks.")
    parser.add_argument("--max-ticks", type=int, default=None, help="Stop after this many ticks.")
    parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout per tick in seconds.")

    # Optional submission before ticking
    parser.add_argument("--submit-emails", help="Queue a new job for these emails first.")
    parser.add_argument("--delay-seconds", type=float, default=None, help="Delay between items for a new job.")
    parser.add_argument("--webhook-url", help="Webhook URL (webhook jobs).")
    parser.add_argument("--subject", default="", help="Webhook subject field.")
    parser.add_argument("--content", default="", help="Webhook content field.")

    parser.add_argument("-v", "--verbose", action="count", default=1, help="-v for INFO, -vv for DEBUG.")
    return parser


async def run(args) -> Dict[str, Any]:
    setup_logging(args.verbose)
    url = job_url(args.base_url, args.job_type, args.site_id)

    async with httpx.AsyncClient(timeout=args.timeout) as client:
        if args.submit_emails:
            body = {
                "emails": args.submit_emails,
                "delay_seconds": args.delay_seconds,
                "webhook_url": args.webhook_url,
                "subject": args.subject,
                "content": args.content,
            }
            accepted = await submit(client, url, body)
            log.info("Submitted %s: %s", accepted["job_key"], accepted["message"])

        return await tick_until_done(client, url, args.interval, args.max_ticks)


def main():
    parser = build_arg_parser()
    args = parser.parse_args()
    try:
        final = asyncio.run(run(args))
        print(json.dumps(final, indent=2, ensure_ascii=False))
    except KeyboardInterrupt:
        print("\nInterrupted.")
    except httpx.HTTPStatusError as e:
        log.error("API error %s: %s", e.response.status_code, e.response.text)
        sys.exit(1)
    except Exception as e:
        log.exception("Fatal error: %s", e)
        sys.exit(1)

if __name__ == "__main__":
    main()
