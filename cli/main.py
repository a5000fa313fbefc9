#!/usr/bin/env python3
"""
vodpipe CLI - Command line interface for the HLS pipeline.
"""

import argparse
import asyncio
import mimetypes
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config import MAX_BATCH_FILES, MAX_SOURCE_SIZE
from core.database import database
from core.enums import AssetCategory, GrantAction
from core.errors import PipelineError, sanitize_error_message
from core.models import MediaAssetKey, SourceMedia
from core.retry import DatabaseRetryableError
from storage.signing import parse_signed_url_expiry


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def parse_asset_key(value: str) -> MediaAssetKey:
    """Parse "EPISODE/LANG" into a MediaAssetKey."""
    episode_id, sep, language_tag = value.partition("/")
    if not sep or not episode_id or not language_tag or "/" in language_tag:
        raise argparse.ArgumentTypeError(f"expected EPISODE/LANGUAGE, got {value!r}")
    return MediaAssetKey(episode_id, language_tag)


def validate_file(file_path: Path) -> int:
    """
    Validate file exists and is readable.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If file doesn't exist, isn't readable, is empty or too large
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    if file_size > MAX_SOURCE_SIZE:
        raise CLIError(
            f"File too large ({file_size / (1024 ** 3):.2f} GB). "
            f"Maximum source size is {MAX_SOURCE_SIZE / (1024 ** 3):.2f} GB"
        )
    return file_size


def format_expiry(expires_at) -> str:
    if not expires_at:
        return "-"
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _get_services():
    # Lazy so --help works without storage/signing configuration
    from worker.service import build_services

    return build_services()


async def _with_catalog(func, args):
    # Services own asyncio primitives, so they are built inside the running loop
    services = _get_services()
    await database.connect()
    try:
        return await func(args, services)
    finally:
        await database.disconnect()


def _run(coro_fn, args):
    """Run an async command, mapping pipeline errors to exit code 1."""
    try:
        return asyncio.run(_with_catalog(coro_fn, args))
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except PipelineError as e:
        print(f"Error [{e.reason.value}]: {sanitize_error_message(str(e), e.reason, log_original=False)}")
        sys.exit(1)
    except DatabaseRetryableError as e:
        print(f"Error: catalog unavailable: {e}")
        sys.exit(1)


async def submit_command(args, services):
    if len(args.files) != len(args.languages):
        raise CLIError("Give one --language per file")
    if len(args.files) > MAX_BATCH_FILES:
        raise CLIError(f"Too many files: {len(args.files)} (max {MAX_BATCH_FILES})")

    items = []
    for file_arg, language in zip(args.files, args.languages):
        path = Path(file_arg)
        validate_file(path)
        content_type = mimetypes.guess_type(path.name)[0]
        items.append((SourceMedia.from_path(path, content_type), MediaAssetKey(args.episode, language)))

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
    ) as progress:
        progress.add_task(f"Transcoding {len(items)} file(s) for episode {args.episode}", total=None)
        outcomes = await services.pipeline.submit_batch(items, AssetCategory(args.category))

    failed = 0
    for outcome in outcomes:
        if outcome.ok:
            print(f"{outcome.key}: published {outcome.asset.segment_count} segments")
            print(f"  URL: {outcome.url}")
            print(f"  Expires: {format_expiry(outcome.expires_at)}")
        else:
            failed += 1
            message = sanitize_error_message(outcome.error, outcome.failure_reason, log_original=False)
            print(f"{outcome.key}: FAILED [{outcome.failure_reason.value}] {message}")
    if failed:
        raise CLIError(f"{failed} of {len(outcomes)} job(s) failed")
    return outcomes


async def show_command(args, services):
    if args.key is None:
        assets = await services.repository.list_all()
        if not assets:
            print("No assets recorded.")
            return assets
        print(f"{'Episode/Lang':<30} {'Category':<14} {'Segments':<9} {'URL expires':<24}")
        print("-" * 80)
        for asset in assets:
            key = str(asset.key)
            key = key[:28] + ".." if len(key) > 30 else key
            expiry = format_expiry(parse_signed_url_expiry(asset.playlist_url))
            print(f"{key:<30} {asset.category.value:<14} {asset.segment_count:<9} {expiry:<24}")
        return assets

    playback = await services.scheduler.resolve_playback_url(args.key)
    if playback is None:
        raise CLIError(f"No asset recorded for {args.key}")
    print(playback.url)
    print(f"Expires: {format_expiry(playback.expires_at)}")
    if playback.stale:
        print("URL is close to expiry; a refresh was " + ("scheduled" if playback.refresh_scheduled else "already running"))
        await services.scheduler.drain()
    return playback


async def sign_command(args, services):
    grant = services.signer.sign(args.object_key, args.ttl, GrantAction(args.action))
    print(grant.url)
    print(f"Expires: {format_expiry(grant.expires_at)}")
    return grant


async def refresh_command(args, services):
    result = await services.scheduler.refresh(args.key)
    if result is None:
        raise CLIError(f"Could not refresh {args.key} (unknown asset, refresh in flight, or refresh failed)")
    print(f"Refreshed {args.key}: {result.segment_count} segments")
    print(result.playlist_grant.url)
    return result


async def refresh_due_command(args, services):
    report = await services.scheduler.tick()
    await services.scheduler.drain()
    print(
        f"Checked {report.checked} asset(s): {report.scheduled} refreshed, "
        f"{report.fresh} still fresh, {report.busy} already in flight"
    )
    return report


async def discard_command(args, services):
    if not await services.pipeline.discard_asset(args.key):
        raise CLIError(f"No asset recorded for {args.key}")
    print(f"Discarded {args.key}")
    return True


def cmd_submit(args):
    """Transcode and publish source files."""
    _run(submit_command, args)


def cmd_show(args):
    """Show recorded assets or one asset's playback URL."""
    _run(show_command, args)


def cmd_sign(args):
    """Sign a single object key."""
    _run(sign_command, args)


def cmd_refresh(args):
    """Refresh one asset's playlist now."""
    _run(refresh_command, args)


def cmd_refresh_due(args):
    """Refresh every asset whose URL is close to expiry."""
    _run(refresh_due_command, args)


def cmd_discard(args):
    """Delete an asset's objects and catalog row."""
    _run(discard_command, args)


def cmd_serve(args):
    """Run the refresh worker."""
    from worker.service import configure_logging, run_worker

    configure_logging()
    asyncio.run(run_worker(health_port=args.health_port) if args.health_port is not None else run_worker())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vodpipe", description="vodpipe - HLS transcode and signed delivery")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Submit command
    submit_parser = subparsers.add_parser("submit", help="Transcode and publish video files")
    submit_parser.add_argument("episode", help="Episode identifier")
    submit_parser.add_argument("files", nargs="+", help="Source video file(s)")
    submit_parser.add_argument(
        "-l", "--language", dest="languages", action="append", required=True,
        help="Language tag, once per file in order",
    )
    submit_parser.add_argument(
        "-c", "--category", choices=[c.value for c in AssetCategory], default=AssetCategory.EPISODE.value,
        help="Asset category (default: hls)",
    )
    submit_parser.set_defaults(func=cmd_submit)

    # Show command
    show_parser = subparsers.add_parser("show", help="List assets or show one playback URL")
    show_parser.add_argument("key", nargs="?", type=parse_asset_key, help="EPISODE/LANGUAGE")
    show_parser.set_defaults(func=cmd_show)

    # Sign command
    sign_parser = subparsers.add_parser("sign", help="Sign an object key")
    sign_parser.add_argument("object_key", help="Object key to sign")
    sign_parser.add_argument("--ttl", type=positive_int, help="Lifetime in seconds")
    sign_parser.add_argument("--action", choices=[a.value for a in GrantAction], default=GrantAction.READ.value)
    sign_parser.set_defaults(func=cmd_sign)

    # Refresh command
    refresh_parser = subparsers.add_parser("refresh", help="Re-sign one asset's playlist now")
    refresh_parser.add_argument("key", type=parse_asset_key, help="EPISODE/LANGUAGE")
    refresh_parser.set_defaults(func=cmd_refresh)

    # Refresh-due command
    due_parser = subparsers.add_parser("refresh-due", help="Re-sign every playlist close to expiry")
    due_parser.set_defaults(func=cmd_refresh_due)

    # Discard command
    discard_parser = subparsers.add_parser("discard", help="Delete an asset")
    discard_parser.add_argument("key", type=parse_asset_key, help="EPISODE/LANGUAGE")
    discard_parser.set_defaults(func=cmd_discard)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the refresh worker")
    serve_parser.add_argument("--health-port", type=int, help="Health server port")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
