"""
Inline script execution for the hybrid fetch path.

Inline ``<script>`` blocks run in an isolated V8 context with just enough of a
browser environment mocked (``window``, ``self``, ``document``, ``location``,
``console``) to let data-bootstrapping assignments complete. Whatever new
non-function globals exist afterwards are reported back; script errors are
expected and ignored.
"""

from __future__ import annotations

import asyncio
import json
from typing import Dict, List

import structlog
from py_mini_racer import MiniRacer

logger = structlog.get_logger(__name__)

DEFAULT_SCRIPT_TIMEOUT_MS = 1000
DEFAULT_MAX_SCRIPTS = 50
DEFAULT_MAX_MEMORY_BYTES = 32 * 1024 * 1024
METADATA_PREFIX = "js:"

_PRELUDE = """
var window = globalThis;
var self = globalThis;
var location = {href: %(url)s, toString: function () { return this.href; }};
var document = {
  location: location,
  URL: %(url)s,
  cookie: "",
  readyState: "complete",
  addEventListener: function () {},
  removeEventListener: function () {},
  getElementById: function () { return null; },
  querySelector: function () { return null; },
  querySelectorAll: function () { return []; },
  createElement: function () { return {style: {}, setAttribute: function () {}, appendChild: function () {}}; }
};
var navigator = {userAgent: "", language: "en-US"};
var console = {
  log: function () {}, error: function () {}, warn: function () {}, info: function () {}, debug: function () {}
};
var __hybridcrawl_baseline__ = Object.keys(globalThis);
"""

_COLLECT = """
(function () {
  var baseline = {};
  __hybridcrawl_baseline__.forEach(function (k) { baseline[k] = true; });
  baseline["__hybridcrawl_baseline__"] = true;
  var out = {};
  Object.keys(globalThis).forEach(function (key) {
    if (baseline[key]) return;
    var value = globalThis[key];
    if (value === undefined || typeof value === "function") return;
    try {
      out[key] = (value !== null && typeof value === "object") ? JSON.stringify(value) : String(value);
    } catch (e) {}
  });
  return JSON.stringify(out);
})()
"""


class ScriptSandbox:
    """Runs inline scripts in a fresh, memory-capped V8 isolate per page, closed once the page is done."""

    def __init__(
        self,
        script_timeout_ms: int = DEFAULT_SCRIPT_TIMEOUT_MS,
        max_scripts: int = DEFAULT_MAX_SCRIPTS,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
    ) -> None:
        self.script_timeout_ms = script_timeout_ms
        self.max_scripts = max_scripts
        self.max_memory_bytes = max_memory_bytes

    async def run(self, url: str, scripts: List[str]) -> Dict[str, str]:
        """Execute ``scripts`` off the event loop; returns ``js:<name>`` metadata entries."""
        if not scripts:
            return {}
        return await asyncio.to_thread(self.run_sync, url, scripts)

    def run_sync(self, url: str, scripts: List[str]) -> Dict[str, str]:
        with MiniRacer() as ctx:
            return self._execute(ctx, url, scripts)

    def _execute(self, ctx: MiniRacer, url: str, scripts: List[str]) -> Dict[str, str]:
        limits = {"timeout": self.script_timeout_ms, "max_memory": self.max_memory_bytes}
        ctx.eval(_PRELUDE % {"url": json.dumps(url)}, **limits)

        executed = 0
        for index, source in enumerate(scripts[: self.max_scripts]):
            try:
                ctx.eval(source, **limits)
                executed += 1
            except Exception as e:
                # Most inline scripts touch DOM APIs the mock does not provide
                logger.debug("Inline script failed", index=index, error=str(e)[:200])

        try:
            collected = json.loads(ctx.eval(_COLLECT, **limits))
        except Exception as e:
            logger.debug("Could not collect script globals", error=str(e)[:200])
            return {}

        logger.debug("Inline scripts executed", executed=executed, total=len(scripts), globals=len(collected))
        return {f"{METADATA_PREFIX}{key}": str(value) for key, value in collected.items()}
