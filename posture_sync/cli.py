"""
posture-sync command line

Usage:
    posture-sync replay session.log --token $TOKEN
    posture-sync simulate --minutes 10 --seed 7
    posture-sync status
    posture-sync flush --force
    posture-sync serve --port 8000
    posture-sync token --user-id demo_user
"""
import argparse
import asyncio
import json
import sys
import time

from posture_sync import config
from posture_sync import logger
from posture_sync.aggregator import summarize
from posture_sync.auth import create_jwt_token, static_token_provider
from posture_sync.frame_source import JsonlFrameSource, SyntheticFrameSource
from posture_sync.local_store import LocalStore
from posture_sync.pipeline import Pipeline
from posture_sync.remote_store import HttpSummaryStore


def _build_pipeline(args) -> Pipeline:
    provider = static_token_provider(args.token)
    principal = provider()
    user_id = principal.user_id if principal is not None else args.user_id
    return Pipeline(
        user_id=user_id,
        store=LocalStore(args.store),
        remote=HttpSummaryStore(args.api_url),
        auth_provider=provider
    )


async def _consume(args, source) -> dict:
    pipeline = _build_pipeline(args)
    await pipeline.start(background_sync=not args.no_sync)
    try:
        await pipeline.run(source)
    finally:
        await pipeline.shutdown()
    return pipeline.status()


async def _flush(args) -> dict:
    pipeline = _build_pipeline(args)
    await pipeline.start(background_sync=False)
    try:
        result = await pipeline.scheduler.flush(force=args.force)
    finally:
        await pipeline.shutdown()
    return {"flush": result, "sync": pipeline.scheduler.status()}


def cmd_replay(args) -> dict:
    return asyncio.run(_consume(args, JsonlFrameSource(args.path)))


def cmd_simulate(args) -> dict:
    source = SyntheticFrameSource(
        duration_seconds=args.minutes * 60,
        fps=args.fps,
        start_ms=int(time.time() * 1000),
        realtime=args.realtime,
        seed=args.seed
    )
    return asyncio.run(_consume(args, source))


def cmd_status(args) -> dict:
    store = LocalStore(args.store)
    try:
        store.init()
        aggregates = store.list_all_sync(args.user_id if args.user_id != "*" else None)
    finally:
        store.close()
    return {"days": [dict(summarize(a), user_id=a.user_id, last_error=a.last_error) for a in aggregates]}


def cmd_flush(args) -> dict:
    return asyncio.run(_flush(args))


def cmd_serve(args):
    import uvicorn

    from posture_sync import database
    if args.database_url:
        database.configure(args.database_url)
    uvicorn.run("posture_sync.main:app", host=args.host, port=args.port, log_level="warning")


def cmd_token(args) -> dict:
    return {"token": create_jwt_token(args.user_id, args.hours)}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="posture-sync", description="Forward-head posture tracking with daily sync")
    parser.add_argument("--store", default=config.LOCAL_STORE_PATH, help="Local SQLite file")
    parser.add_argument("--user-id", default=config.DEFAULT_USER_ID, help="User when no token is given")
    parser.add_argument("--token", default=config.API_TOKEN, help="Bearer token (or POSTURE_SYNC_TOKEN)")
    parser.add_argument("--api-url", default=config.REMOTE_API_URL, help="Summary server base URL")
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Replay a FRAME_JSON log through the pipeline")
    replay.add_argument("path")
    replay.add_argument("--no-sync", action="store_true", help="Measure and store only")
    replay.set_defaults(func=cmd_replay)

    simulate = sub.add_parser("simulate", help="Run a synthetic session")
    simulate.add_argument("--minutes", type=float, default=5.0)
    simulate.add_argument("--fps", type=float, default=config.DEFAULT_FPS)
    simulate.add_argument("--seed", type=int, default=None)
    simulate.add_argument("--realtime", action="store_true", help="Pace frames at the target FPS")
    simulate.add_argument("--no-sync", action="store_true", help="Measure and store only")
    simulate.set_defaults(func=cmd_simulate)

    status = sub.add_parser("status", help="Show stored daily aggregates ('--user-id \"*\"' for all users)")
    status.set_defaults(func=cmd_status)

    flush = sub.add_parser("flush", help="Upload pending days now")
    flush.add_argument("--force", action="store_true", help="Also retry days parked by auth/validation errors")
    flush.set_defaults(func=cmd_flush)

    serve = sub.add_parser("serve", help="Run the reference summary server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--database-url", default=None)
    serve.set_defaults(func=cmd_serve)

    token = sub.add_parser("token", help="Issue a development bearer token")
    token.add_argument("--hours", type=float, default=None)
    token.set_defaults(func=cmd_token)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = args.func(args)
    except KeyboardInterrupt:
        logger.log_warning("Interrupted", {"command": args.command})
        return 130
    if result is not None:
        print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
