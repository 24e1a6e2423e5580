"""
Locate a Chrome/Chromium executable and build its launch flags.
"""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import List, Optional

import structlog

logger = structlog.get_logger(__name__)

_MAC_CANDIDATES = [
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "/Applications/Google Chrome Canary.app/Contents/MacOS/Google Chrome Canary",
    "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge",
    "/Applications/Brave Browser.app/Contents/MacOS/Brave Browser",
]

_LINUX_CANDIDATES = [
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome",
    "/usr/bin/chromium-browser",
    "/usr/bin/chromium",
    "/snap/bin/chromium",
    "/usr/bin/microsoft-edge",
    "/usr/bin/brave-browser",
    "/usr/bin/brave",
]

_PATH_NAMES = ["google-chrome-stable", "google-chrome", "chromium-browser", "chromium", "chrome"]

# Hardened, low-overhead flag set for headless scraping
CHROMIUM_ARGS = [
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-default-apps",
    "--disable-hang-monitor",
    "--disable-ipc-flooding-protection",
    "--disable-prompt-on-repost",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--disable-translate",
    "--force-color-profile=srgb",
    "--log-level=3",
    "--metrics-recording-only",
    "--mute-audio",
    "--safebrowsing-disable-auto-update",
    "--disable-features=site-per-process,TranslateUI,BlinkGenPropertyTrees",
    "--enable-features=NetworkService,NetworkServiceInProcess",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--window-size=1920,1080",
    "--disk-cache-size=0",
    "--media-cache-size=0",
]


def _is_executable(path: str) -> bool:
    p = Path(path)
    if not p.is_file():
        return False
    if sys.platform.startswith("win"):
        return True
    return os.access(p, os.X_OK)


def _candidates() -> List[str]:
    home = os.environ.get("HOME", "")
    if sys.platform == "darwin":
        paths = list(_MAC_CANDIDATES)
        if home:
            paths += [
                os.path.join(home, "Applications/Google Chrome.app/Contents/MacOS/Google Chrome"),
                os.path.join(home, "Applications/Chromium.app/Contents/MacOS/Chromium"),
            ]
        return paths
    if sys.platform.startswith("win"):
        paths = []
        for var in ("ProgramFiles", "ProgramFiles(x86)", "LocalAppData"):
            base = os.environ.get(var)
            if base:
                paths += [
                    os.path.join(base, "Google", "Chrome", "Application", "chrome.exe"),
                    os.path.join(base, "Chromium", "Application", "chrome.exe"),
                    os.path.join(base, "Microsoft", "Edge", "Application", "msedge.exe"),
                    os.path.join(base, "BraveSoftware", "Brave-Browser", "Application", "brave.exe"),
                ]
        return paths
    paths = list(_LINUX_CANDIDATES)
    if home:
        paths += [
            os.path.join(home, ".local/share/flatpak/exports/bin/com.google.Chrome"),
            os.path.join(home, ".local/share/flatpak/exports/bin/org.chromium.Chromium"),
        ]
    return paths


def find_chrome() -> Optional[str]:
    """
    Find a Chrome-family executable.

    Order: ``CHROME_PATH``, the platform's standard install locations, then
    ``PATH``. Returns None when nothing is found, in which case Playwright's
    bundled Chromium is used.
    """
    env_path = os.environ.get("CHROME_PATH")
    if env_path:
        if _is_executable(env_path):
            logger.debug("Chrome found via CHROME_PATH", path=env_path)
            return env_path
        logger.warning("CHROME_PATH set but not executable", path=env_path)

    for path in _candidates():
        if _is_executable(path):
            logger.debug("Chrome found at standard location", path=path, platform=sys.platform)
            return path

    for name in _PATH_NAMES:
        found = shutil.which(name)
        if found:
            logger.debug("Chrome found in PATH", path=found)
            return found

    logger.debug("Chrome not found, using bundled Chromium", platform=sys.platform)
    return None


def launch_args(extra: Optional[List[str]] = None) -> List[str]:
    return CHROMIUM_ARGS + list(extra or [])
