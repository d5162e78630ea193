"""
Utility script to download LocalMind model artifacts.

Examples:
    python scripts/download_models.py --list
    python scripts/download_models.py --models tinyllama-1.1b-q4.gguf
    LOCALMIND_HF_ENDPOINT=https://huggingface.co python scripts/download_models.py --all
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Callable, Iterable

from dotenv import load_dotenv

from core.download_coordinator import DownloadCoordinator
from core.errors import DownloadError
from core.model_registry import ModelDescriptor, ModelRegistry
from core.settings_loader import SettingsLoader
from utils.file_utils import format_file_size
from utils.logger_util import get_logger

LOGGER = get_logger("scripts.download_models")


def resolve_models_dir(settings: SettingsLoader) -> Path:
    """
    Resolve the models directory the runtime uses.
    """
    data_dir = settings.get_path("paths", "data_dir", env="LOCALMIND_DATA_DIR", default="./data")
    return settings.get_path("paths", "models_dir", env="LOCALMIND_MODELS_DIR", default=str(data_dir / "models"))


def list_models(registry: ModelRegistry, models_dir: Path) -> None:
    """
    Print the catalog for quick reference.
    """
    print(f"{'Name':<28} {'Size':<10} {'Downloaded':<11} Description")
    print("-" * 90)
    for descriptor in registry:
        downloaded = "yes" if (models_dir / descriptor.name).is_file() else "no"
        size = format_file_size(descriptor.size_bytes)
        print(f"{descriptor.name:<28} {size:<10} {downloaded:<11} {descriptor.description}")


def _progress_logger(name: str) -> Callable[[int], None]:
    last = {"bucket": -1}

    def report(percent: int) -> None:
        if percent < 0:
            return
        bucket = percent // 10
        if bucket != last["bucket"]:
            last["bucket"] = bucket
            LOGGER.info("%s: %s%%", name, percent)

    return report


def download_model(coordinator: DownloadCoordinator, descriptor: ModelDescriptor, dry_run: bool) -> bool:
    """
    Download a single artifact through the coordinator.
    """
    target = coordinator.models_dir / descriptor.name
    if dry_run:
        LOGGER.info("DRY-RUN %s -> %s", descriptor.download_url, target)
        return True

    try:
        coordinator.download(descriptor, _progress_logger(descriptor.name))
    except DownloadError as exc:
        LOGGER.error("Failed to download %s: %s", descriptor.name, exc)
        return False
    LOGGER.info("Saved %s", target)
    return True


def parse_args() -> argparse.Namespace:
    """
    Parse CLI arguments.
    """
    parser = argparse.ArgumentParser(description="Download LocalMind models.")
    parser.add_argument(
        "--models",
        nargs="+",
        default=[],
        help="Specific model names to download (default: none).",
    )
    parser.add_argument("--all", action="store_true", help="Download every registered model.")
    parser.add_argument("--list", action="store_true", help="List available models.")
    parser.add_argument("--dry-run", action="store_true", help="Print actions without downloading.")
    return parser.parse_args()


def main() -> None:
    """
    CLI entry point.
    """
    load_dotenv()
    args = parse_args()
    settings = SettingsLoader()
    registry = ModelRegistry()
    models_dir = resolve_models_dir(settings)

    if args.list:
        list_models(registry, models_dir)
        if not args.models and not args.all:
            return

    targets: Iterable[str]
    if args.all:
        targets = [descriptor.name for descriptor in registry]
    else:
        targets = args.models

    if not targets:
        LOGGER.info("No models requested. Use --list or --models <name>.")
        return

    coordinator = DownloadCoordinator(models_dir)
    for name in targets:
        if name not in registry:
            LOGGER.error("Unknown model name: %s", name)
            continue
        download_model(coordinator, registry.get(name), dry_run=args.dry_run)


if __name__ == "__main__":
    main()
