"""Application entry point for the portrait asset store."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

import requests

from config.settings import AppConfig, load_config
from modules.services.image_cache import RemoteImageCache
from modules.services.storage_service import ImageStorageService
from modules.storage.content_directory import ContentDirectory
from modules.storage.ledger import MetadataLedger
from modules.utils.logging import setup_logging


@dataclass(slots=True)
class AssetServices:
    """Process-wide handles, built once and passed to callers."""

    config: AppConfig
    ledger: MetadataLedger
    cache: RemoteImageCache
    storage: ImageStorageService


def build_services(config: AppConfig, session: Optional[requests.Session] = None) -> AssetServices:
    """Wire the ledger, both content directories and the two services."""
    session = session or requests.Session()
    user_agent = config.metadata.get("user_agent")
    if user_agent:
        session.headers["User-Agent"] = user_agent

    def _directory(root) -> ContentDirectory:
        return ContentDirectory(
            root,
            session,
            timeout=config.download_timeout,
            chunk_size=config.download_chunk_size,
            verify_images=config.verify_images,
            default_extension=config.default_extension,
        )

    ledger = MetadataLedger(config.ledger_path)
    return AssetServices(
        config=config,
        ledger=ledger,
        cache=RemoteImageCache(config, ledger, _directory(config.cache_dir)),
        storage=ImageStorageService(config, ledger, _directory(config.storage_dir)),
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and maintain the local image store.")
    parser.add_argument("--env", dest="env_path", default=None, help="Path to a .env file.")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("stats", help="Show training/generated image counts and disk usage.")
    commands.add_parser("cache-stats", help="Show remote image cache counters.")
    commands.add_parser("cleanup", help="Evict old cache entries down to the target size.")
    fetch = commands.add_parser("fetch", help="Resolve a URL through the image cache.")
    fetch.add_argument("url")
    commands.add_parser("clear-cache", help="Drop every cached remote image.")
    commands.add_parser("clear-all", help="Delete all stored images and the model name.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Load configuration and run one maintenance command."""
    args = parse_args(argv)
    config = load_config(args.env_path)
    logger = setup_logging(config)
    services = build_services(config)

    if args.command == "stats":
        result = services.storage.get_storage_stats().to_dict()
        result["ai_model_name"] = services.storage.get_ai_model_name()
    elif args.command == "cache-stats":
        result = services.cache.get_cache_stats().to_dict()
    elif args.command == "cleanup":
        result = services.cache.cleanup_cache().to_dict()
    elif args.command == "fetch":
        result = {"url": args.url, "resolved": services.cache.get_image(args.url)}
    elif args.command == "clear-cache":
        services.cache.clear_cache()
        result = {"cleared": "cache"}
    else:
        services.storage.clear_all_data()
        result = {"cleared": "all"}

    logger.info("Command %s finished", args.command)
    json.dump(result, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
