"""Runtime installation and verification of the Chromium build used by the worker."""

import asyncio
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Optional, Set, Tuple

from ..worker.protocol import EngineError

logger = logging.getLogger(__name__)


def get_playwright_browsers_path() -> Path:
    """Get the Playwright browsers installation path."""
    # Check environment variable first
    if "PLAYWRIGHT_BROWSERS_PATH" in os.environ:
        return Path(os.environ["PLAYWRIGHT_BROWSERS_PATH"])
    # Default to ~/.cache/ms-playwright
    return Path.home() / ".cache" / "ms-playwright"


def _chromium_dirs(browsers_path: Path) -> Set[Path]:
    if not browsers_path.exists():
        return set()
    return set(browsers_path.glob("chromium-*"))


def _cleanup_playwright_browsers(browsers_path: Path, preexisting: Set[Path]) -> None:
    """
    Remove chromium builds left behind by a failed installation.

    The browsers directory is a cache shared with other workers, so only
    chromium-* entries that appeared during this install are deleted.
    """
    for partial in sorted(_chromium_dirs(browsers_path) - preexisting):
        try:
            logger.info(f"Cleaning up partial Playwright download: {partial}")
            shutil.rmtree(partial)
        except OSError as e:
            logger.warning(f"Failed to clean up {partial}: {e}")


def verify_playwright_browsers(browsers_path: Optional[Path] = None) -> bool:
    """
    Verify that Chromium is installed by checking the browsers directory.

    Returns:
        True if a chromium-* build is present, False otherwise
    """
    browsers_path = browsers_path or get_playwright_browsers_path()
    logger.debug(f"Checking for Playwright browsers at: {browsers_path}")

    if not browsers_path.exists():
        logger.debug(f"Browsers directory does not exist: {browsers_path}")
        return False

    # Look for chromium directory (pattern: chromium-*)
    chromium_dirs = list(browsers_path.glob("chromium-*"))
    if not chromium_dirs:
        logger.debug(f"No chromium directories found in: {browsers_path}")
        return False

    logger.debug(f"Found chromium installation: {chromium_dirs[0]}")
    return True


async def install_playwright_browsers(browsers_path: Optional[Path] = None) -> Tuple[bool, str]:
    """
    Install Chromium for Playwright.

    This runs: playwright install chromium

    We skip '--with-deps' because it needs root for system packages; the
    container image is expected to carry them.

    Returns:
        Tuple of (success: bool, message: str)
    """
    browsers_path = browsers_path or get_playwright_browsers_path()
    logger.info(f"Running: playwright install chromium (target: {browsers_path})")

    env = os.environ.copy()
    env["PLAYWRIGHT_BROWSERS_PATH"] = str(browsers_path)
    preexisting = _chromium_dirs(browsers_path)

    try:
        process = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "playwright", "install", "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
        stdout, _ = await process.communicate()
    except OSError as e:
        _cleanup_playwright_browsers(browsers_path, preexisting)
        return False, f"Could not run playwright installer: {e}"

    stdout_text = stdout.decode(errors="replace") if stdout else ""
    if process.returncode != 0:
        _cleanup_playwright_browsers(browsers_path, preexisting)
        return False, f"Playwright installation failed with code {process.returncode}:\n{stdout_text}"

    if not verify_playwright_browsers(browsers_path):
        _cleanup_playwright_browsers(browsers_path, preexisting)
        return False, "Installation completed but verification failed"

    return True, f"Playwright browsers installed successfully to {browsers_path}"


async def ensure_playwright_installed() -> None:
    """
    Ensure Chromium is installed, installing it if necessary.

    Idempotent and safe to call on every worker start.

    Raises:
        EngineError: If installation fails; the worker cannot serve without a browser
    """
    if verify_playwright_browsers():
        logger.info("Playwright browsers already installed")
        return

    logger.warning("Playwright browsers not detected, starting installation...")
    success, message = await install_playwright_browsers()
    if not success:
        raise EngineError(message)

    logger.info(message)
