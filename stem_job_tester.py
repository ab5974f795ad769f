#!/usr/bin/env python
"""Start a stem separation job against a running API and advance it until it finishes."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Any

import httpx


TERMINAL_STATUSES = {"succeeded", "failed"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create a stem job for an uploaded song and poll /advance until it is terminal."
    )
    parser.add_argument(
        "base_url",
        help="API base URL, e.g. http://localhost:8000",
    )
    parser.add_argument(
        "--user-id",
        required=True,
        help="Owner of the input asset.",
    )
    parser.add_argument(
        "--input-asset-id",
        default=None,
        help="song_input asset to separate. Required unless --job-id is given.",
    )
    parser.add_argument(
        "--job-id",
        default=None,
        help="Resume polling an existing job instead of creating one.",
    )
    parser.add_argument(
        "--voice-profile-id",
        default=None,
        help="Optional voice profile to attach the generated stems to.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=5.0,
        help="Seconds between advance calls.",
    )
    parser.add_argument(
        "--max-minutes",
        type=float,
        default=60.0,
        help="Give up after this many minutes.",
    )
    parser.add_argument(
        "--output-json",
        default=None,
        help="Write the final state to this file.",
    )
    return parser.parse_args()


def _summary(state: dict[str, Any]) -> str:
    return (
        f"status={state.get('status')} stage={state.get('stage')} "
        f"progress={state.get('progress')} message={state.get('message')!r}"
    )


def _create(client: httpx.Client, args: argparse.Namespace) -> dict[str, Any]:
    if not args.input_asset_id:
        raise ValueError("--input-asset-id is required when --job-id is not given")
    res = client.post(
        "/v1/stem-jobs",
        json={
            "user_id": args.user_id,
            "input_asset_id": args.input_asset_id,
            "voice_profile_id": args.voice_profile_id,
        },
    )
    res.raise_for_status()
    return res.json()


def _advance(client: httpx.Client, job_id: str, user_id: str) -> dict[str, Any] | None:
    res = client.post(f"/v1/stem-jobs/{job_id}/advance", params={"user_id": user_id})
    if res.status_code == 409:
        # someone else advanced the job between our read and write
        logging.warning("Concurrent update on %s, retrying next tick", job_id)
        return None
    res.raise_for_status()
    return res.json()


def main() -> int:
    args = parse_args()

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    deadline = time.monotonic() + args.max_minutes * 60.0
    with httpx.Client(base_url=args.base_url.rstrip("/"), timeout=120.0) as client:
        if args.job_id:
            res = client.get(f"/v1/stem-jobs/{args.job_id}", params={"user_id": args.user_id})
            res.raise_for_status()
            state = res.json()
        else:
            state = _create(client, args)
        job_id = state["job_id"]
        print(f"[..] Job {job_id}: {_summary(state)}")

        while state.get("status") not in TERMINAL_STATUSES:
            if time.monotonic() > deadline:
                print(f"[!!] Gave up after {args.max_minutes} minutes: {_summary(state)}")
                return 2
            time.sleep(max(0.5, args.interval))
            nxt = _advance(client, job_id, args.user_id)
            if nxt is None:
                continue
            if (nxt.get("stage"), nxt.get("progress")) != (state.get("stage"), state.get("progress")):
                print(f"[..] {_summary(nxt)}")
            state = nxt

    if args.output_json:
        with open(args.output_json, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)

    if state["status"] == "failed":
        print(f"[FAIL] {state.get('error_message')}")
        return 1

    outputs = state.get("outputs") or {}
    print(f"[OK] Main vocal asset: {outputs.get('raw_main_vocal_asset_id')}")
    print(f"[OK] Back vocal asset: {outputs.get('raw_back_vocal_asset_id')}")
    print(f"[OK] Instrumental asset: {outputs.get('instrumental_asset_id')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
