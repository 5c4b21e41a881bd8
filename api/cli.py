#!/usr/bin/env python3
"""
rolloutctl: operator command line for the rollout control plane.

Usage:
    rolloutctl start blue-green --wait
    rolloutctl status 4f1c...
    rolloutctl approve 9a7e...
    rolloutctl reject 9a7e... --reason "green pods crash-looping"
    rolloutctl cancel 4f1c...
    rolloutctl destroy 4f1c... blue
    rolloutctl probe http://echoserver.green.example.com --attempts 12 --interval 10
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any, Optional

import httpx

from api.models import ACTIVE_ROLLOUT_STATES, RolloutStatus
from api.services.health_validator import HealthValidator
from api.settings import settings

logger = logging.getLogger(__name__)

WAITING_STATES = {s.value for s in ACTIVE_ROLLOUT_STATES}


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return json.dumps(body)


def cmd_start(client: httpx.Client, args: argparse.Namespace) -> int:
    response = client.post(f"/api/v1/rollouts/{args.rollout_id}")
    response.raise_for_status()
    run = response.json()
    logger.info("Run %s started", run["run_id"])

    while args.wait and run["status"] in WAITING_STATES:
        time.sleep(args.poll_interval)
        response = client.get(f"/api/v1/rollouts/runs/{run['run_id']}")
        response.raise_for_status()
        run = response.json()

    _print(run)
    if run["status"] in (RolloutStatus.FAILED.value, RolloutStatus.CANCELLED.value):
        return 1
    return 0


def cmd_status(client: httpx.Client, args: argparse.Namespace) -> int:
    response = client.get(f"/api/v1/rollouts/runs/{args.run_id}")
    response.raise_for_status()
    _print(response.json())
    return 0


def cmd_cancel(client: httpx.Client, args: argparse.Namespace) -> int:
    response = client.post(f"/api/v1/rollouts/runs/{args.run_id}/cancel")
    response.raise_for_status()
    _print(response.json())
    return 0


def cmd_destroy(client: httpx.Client, args: argparse.Namespace) -> int:
    response = client.post(
        f"/api/v1/rollouts/runs/{args.run_id}/environments/{args.environment}/destroy"
    )
    response.raise_for_status()
    _print(response.json())
    return 0


def cmd_approve(client: httpx.Client, args: argparse.Namespace) -> int:
    response = client.post(f"/api/v1/promotions/{args.request_id}/approve")
    response.raise_for_status()
    _print(response.json())
    return 0


def cmd_reject(client: httpx.Client, args: argparse.Namespace) -> int:
    response = client.post(
        f"/api/v1/promotions/{args.request_id}/reject",
        json={"reason": args.reason},
    )
    response.raise_for_status()
    _print(response.json())
    return 0


def cmd_probe(args: argparse.Namespace) -> int:
    """Run the health validator locally against one endpoint."""
    validator = HealthValidator(request_timeout=args.timeout)
    result = asyncio.run(
        validator.validate(
            args.url,
            max_attempts=args.attempts,
            interval_seconds=args.interval,
        )
    )
    _print(result.model_dump(mode="json"))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rolloutctl",
        description="Drive EKS blue/green rollouts and their promotion gate.",
    )
    parser.add_argument(
        "--api-url",
        default=settings.api_url,
        help=f"Control plane URL (default: {settings.api_url})",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Debug logging (overrides LOG_LEVEL)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a run of a rollout definition")
    start.add_argument("rollout_id")
    start.add_argument("--wait", action="store_true", help="Wait until the wave finishes")
    start.add_argument("--poll-interval", type=float, default=10.0)
    start.set_defaults(func=cmd_start)

    status = subparsers.add_parser("status", help="Show a run")
    status.add_argument("run_id")
    status.set_defaults(func=cmd_status)

    cancel = subparsers.add_parser("cancel", help="Cancel a run")
    cancel.add_argument("run_id")
    cancel.set_defaults(func=cmd_cancel)

    destroy = subparsers.add_parser(
        "destroy", help="Decommission an environment of a finished run"
    )
    destroy.add_argument("run_id")
    destroy.add_argument("environment")
    destroy.set_defaults(func=cmd_destroy)

    approve = subparsers.add_parser("approve", help="Approve a promotion request")
    approve.add_argument("request_id")
    approve.set_defaults(func=cmd_approve)

    reject = subparsers.add_parser("reject", help="Reject a promotion request")
    reject.add_argument("request_id")
    reject.add_argument("--reason", default=None)
    reject.set_defaults(func=cmd_reject)

    probe = subparsers.add_parser("probe", help="Validate an endpoint from this machine")
    probe.add_argument("url")
    probe.add_argument("--attempts", type=int, default=12)
    probe.add_argument("--interval", type=float, default=10.0)
    probe.add_argument("--timeout", type=float, default=5.0)
    probe.set_defaults(func=None)

    return parser


def main(argv: Optional[list[str]] = None, client: Optional[httpx.Client] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else level,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    if args.command == "probe":
        return cmd_probe(args)

    owns_client = client is None
    if client is None:
        client = httpx.Client(base_url=args.api_url, timeout=30.0)

    try:
        return args.func(client, args)
    except httpx.HTTPStatusError as e:
        logger.error("%s %s: %s", e.response.status_code, e.request.url, _detail(e.response))
        return 1
    except httpx.HTTPError as e:
        logger.error("Cannot reach %s: %s", args.api_url, e)
        return 1
    finally:
        if owns_client:
            client.close()


if __name__ == "__main__":
    sys.exit(main())
