#!/usr/bin/env python3
"""
Watch a generation job from the command line.

Usage:
    python -m backend.scripts.watch_job \\
        --backend-url http://localhost:8000 \\
        --shop demo.myshopify.com \\
        --type schema --generate

Exit codes:
    0  job completed
    1  job failed
    2  attempt budget exhausted (the job may still finish)
    3  generate request was refused (plan, trial, tokens, precondition)
"""
import argparse
import sys
from typing import Optional

import httpx

from backend.core.config import settings
from backend.features.jobs.poller import HttpStatusSource, PollSnapshot, StatusPoller

GENERATE_PATHS = {
    "schema": "/api/schema/generate-all",
    "sitemap": "/api/sitemap/generate",
}

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_TIMEOUT = 2
EXIT_REFUSED = 3


def _print_update(snapshot: PollSnapshot) -> None:
    line = f"v{snapshot.version} {snapshot.status}"
    if snapshot.queue_position is not None:
        line += f" | position {snapshot.queue_position}, ~{snapshot.estimated_seconds}s"
    if snapshot.message:
        line += f" | {snapshot.message}"
    print(line)


def start_job(client: httpx.Client, backend_url: str, shop: str, job_type: str, force_basic_seo: bool) -> Optional[int]:
    """POST the generate route; returns the queued version or None when refused."""
    response = client.post(
        backend_url.rstrip("/") + GENERATE_PATHS[job_type],
        params={"shop": shop},
        json={"forceBasicSeo": force_basic_seo},
    )
    body = response.json()
    if response.status_code == 202:
        print(f"queued v{body['version']} (tokens debited: {body['tokensDebited']})")
        return body["version"]
    error = body.get("error")
    code = error.get("code") if isinstance(error, dict) else error
    print(f"refused ({response.status_code}): {code}")
    return None


def watch(
    client: httpx.Client,
    backend_url: str,
    shop: str,
    job_type: str,
    *,
    since_version: int = 0,
    interval_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
    sleep=None,
) -> int:
    source = HttpStatusSource(backend_url, shop, job_type, client=client)
    kwargs = {"sleep": sleep} if sleep else {}
    poller = StatusPoller(
        source,
        interval_seconds=interval_seconds,
        max_attempts=max_attempts,
        since_version=since_version,
        on_update=_print_update,
        **kwargs,
    )
    outcome = poller.run()
    if outcome.timed_out:
        print(f"gave up after {outcome.attempts} polls ({outcome.transient_errors} transient errors)")
        return EXIT_TIMEOUT
    if outcome.snapshot.status == "completed":
        return EXIT_COMPLETED
    print(f"failed: {outcome.snapshot.error_code}")
    return EXIT_FAILED


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Watch a generation job until it finishes")
    parser.add_argument("--backend-url", default="http://localhost:8000")
    parser.add_argument("--shop", required=True)
    parser.add_argument("--type", dest="job_type", required=True, choices=sorted(GENERATE_PATHS))
    parser.add_argument("--generate", action="store_true", help="Queue a job before watching")
    parser.add_argument("--force-basic-seo", action="store_true")
    parser.add_argument("--interval", type=float, default=settings.POLL_PROGRESS_INTERVAL_SECONDS)
    parser.add_argument("--max-attempts", type=int, default=settings.POLL_MAX_ATTEMPTS)
    args = parser.parse_args(argv)

    with httpx.Client(timeout=10.0) as client:
        since = 0
        if args.generate:
            queued = start_job(client, args.backend_url, args.shop, args.job_type, args.force_basic_seo)
            if queued is None:
                return EXIT_REFUSED
            since = queued
        return watch(
            client,
            args.backend_url,
            args.shop,
            args.job_type,
            since_version=since,
            interval_seconds=args.interval,
            max_attempts=args.max_attempts,
        )


if __name__ == "__main__":
    sys.exit(main())
