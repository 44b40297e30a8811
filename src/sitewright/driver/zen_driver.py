"""zendriver-backed ``PageDriver`` for undetected Chrome automation.

NOTE ON ZENDRIVER API COMPATIBILITY:
zendriver's API is based on CDP and may change across versions.
This module uses zendriver's documented patterns:
  - zd.start(config) → Browser
  - browser.get(url) → Tab
  - tab.select(selector) → Element
  - tab.evaluate(js) → result
  - tab.send(cdp command) → result

If method signatures change, update this file; the snapshot model,
executor and explorer only see the ``PageDriver`` protocol.
"""

from __future__ import annotations

import asyncio
import base64
import json as _json
import logging
import time
from io import BytesIO
from typing import Any

import zendriver as zd
from PIL import Image

from sitewright.driver.base import ElementInfo, check_navigation_allowed
from sitewright.exceptions import (
    DisallowedNavigationError,
    DriverDisconnectedError,
    SelectorResolutionError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# In-page scripts
# ---------------------------------------------------------------------------

# Walks document.body and returns {rootId, map} as a JSON string.  Element
# records carry tagName/xpath/attributes/children plus visibility and
# interactivity flags; highlight indices are assigned to visible
# interactive elements in document order.
_CAPTURE_JS = r"""
(() => {
  const INTERACTIVE_TAGS = new Set(['a','button','input','select','textarea','details','summary','option','label']);
  const INTERACTIVE_ROLES = new Set(['button','link','checkbox','radio','tab','menuitem','option','switch','combobox','textbox','listbox']);
  const SKIP_TAGS = new Set(['script','style','noscript','template','link','meta']);
  const MAX_NODES = 20000;
  const map = {};
  let nextId = 0;
  let highlight = 0;

  const xpathOf = (el) => {
    const parts = [];
    while (el && el.nodeType === 1) {
      let index = 1;
      let sib = el.previousElementSibling;
      while (sib) { if (sib.tagName === el.tagName) index++; sib = sib.previousElementSibling; }
      let hasNext = false;
      sib = el.nextElementSibling;
      while (sib) { if (sib.tagName === el.tagName) { hasNext = true; break; } sib = sib.nextElementSibling; }
      const tag = el.tagName.toLowerCase();
      parts.unshift((index > 1 || hasNext) ? `${tag}[${index}]` : tag);
      el = el.parentElement;
    }
    return parts.join('/');
  };

  const isVisible = (el) => {
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
    const rect = el.getBoundingClientRect();
    return rect.width > 0 && rect.height > 0;
  };

  const isInteractive = (el) => {
    const tag = el.tagName.toLowerCase();
    if (INTERACTIVE_TAGS.has(tag)) return !el.disabled;
    const role = (el.getAttribute('role') || '').toLowerCase();
    if (INTERACTIVE_ROLES.has(role)) return true;
    if (el.hasAttribute('onclick') || el.getAttribute('contenteditable') === 'true') return true;
    const tabindex = el.getAttribute('tabindex');
    if (tabindex !== null && tabindex !== '-1') return true;
    return window.getComputedStyle(el).cursor === 'pointer'
      && !(el.parentElement && window.getComputedStyle(el.parentElement).cursor === 'pointer');
  };

  const isTop = (el) => {
    const rect = el.getBoundingClientRect();
    const x = rect.left + rect.width / 2;
    const y = rect.top + rect.height / 2;
    if (x < 0 || y < 0 || x > window.innerWidth || y > window.innerHeight) return true;
    const top = document.elementFromPoint(x, y);
    return !top || top === el || el.contains(top) || top.contains(el);
  };

  const inViewport = (el) => {
    const rect = el.getBoundingClientRect();
    return rect.bottom > 0 && rect.right > 0 && rect.top < window.innerHeight && rect.left < window.innerWidth;
  };

  const walk = (node, parentVisible) => {
    if (nextId >= MAX_NODES) return null;
    if (node.nodeType === 3) {
      const text = node.textContent.trim();
      if (!text) return null;
      const id = String(nextId++);
      map[id] = {type: 'TEXT_NODE', text: text, isVisible: parentVisible};
      return id;
    }
    if (node.nodeType !== 1) return null;
    const tag = node.tagName.toLowerCase();
    if (SKIP_TAGS.has(tag)) return null;
    const id = String(nextId++);
    const visible = isVisible(node);
    const interactive = visible && isInteractive(node);
    const attributes = {};
    for (const attr of node.attributes) attributes[attr.name] = attr.value;
    const record = {
      tagName: tag,
      xpath: xpathOf(node),
      attributes: attributes,
      children: [],
      isVisible: visible,
      isInteractive: interactive,
      isTopElement: visible ? isTop(node) : false,
      isInViewport: visible ? inViewport(node) : false,
      shadowRoot: !!node.shadowRoot,
    };
    if (interactive && record.isTopElement) record.highlightIndex = highlight++;
    map[id] = record;
    const kids = node.shadowRoot ? [...node.shadowRoot.childNodes, ...node.childNodes] : node.childNodes;
    for (const child of kids) {
      const childId = walk(child, visible);
      if (childId !== null) record.children.push(childId);
    }
    return id;
  };

  const rootId = document.body ? walk(document.body, true) : null;
  return JSON.stringify({rootId: rootId, map: map});
})()
"""

# Resolves a selector in the live page.  Returns {error} for an invalid
# selector, otherwise {matches: [...]} with the ElementInfo fields.
_QUERY_JS = r"""
((selector) => {
  const xpathOf = (el) => {
    const parts = [];
    while (el && el.nodeType === 1) {
      let index = 1;
      let sib = el.previousElementSibling;
      while (sib) { if (sib.tagName === el.tagName) index++; sib = sib.previousElementSibling; }
      let hasNext = false;
      sib = el.nextElementSibling;
      while (sib) { if (sib.tagName === el.tagName) { hasNext = true; break; } sib = sib.nextElementSibling; }
      const tag = el.tagName.toLowerCase();
      parts.unshift((index > 1 || hasNext) ? `${tag}[${index}]` : tag);
      el = el.parentElement;
    }
    return parts.join('/');
  };
  let nodes;
  try { nodes = document.querySelectorAll(selector); }
  catch (e) { return JSON.stringify({error: String(e)}); }
  const matches = [];
  for (const el of nodes) {
    const attributes = {};
    for (const attr of el.attributes) attributes[attr.name] = attr.value;
    const tagPath = [];
    let cur = el;
    while (cur && cur !== document.body && cur.nodeType === 1) {
      tagPath.unshift(cur.tagName.toLowerCase());
      cur = cur.parentElement;
    }
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    matches.push({
      tag: el.tagName.toLowerCase(),
      xpath: xpathOf(el),
      text: (el.innerText || el.textContent || '').trim().slice(0, 5000),
      attributes: attributes,
      tag_path: tagPath,
      visible: rect.width > 0 && rect.height > 0 && style.display !== 'none' && style.visibility !== 'hidden',
    });
  }
  return JSON.stringify({matches: matches});
})
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _cdp_screenshot(tab) -> bytes:
    """Take a screenshot using CDP directly."""
    result = await tab.send(zd.cdp.page.capture_screenshot(format_="png"))
    return base64.b64decode(result)


def _resize_png(png_bytes: bytes, width: int, height: int) -> bytes:
    """Downscale PNG bytes to fit within ``width`` x ``height``.

    Never upscales; returns the original bytes when already small enough.
    """
    img = Image.open(BytesIO(png_bytes))
    if img.width <= width and img.height <= height:
        return png_bytes
    img.thumbnail((width, height), Image.LANCZOS)
    buf = BytesIO()
    img.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class ZenDriver:
    """One zendriver browser session exposing the ``PageDriver`` protocol.

    All configuration is read from ``sitewright.settings.get_settings()``
    at construction time.  Use as an async context manager, or call
    ``start()``/``stop()`` explicitly.
    """

    def __init__(self) -> None:
        from sitewright.settings import get_settings

        s = get_settings()

        self._headless: bool = s.browser.headless
        self._chrome_binary: str = s.browser.chrome_binary
        self._action_timeout: int = s.browser.action_timeout
        self._page_load_timeout: float = s.browser.page_load_timeout_sec
        self._settle_delay: float = s.browser.settle_delay_sec
        self._allowed_domains: list[str] = list(s.browser.allowed_domains)
        self._blocked_domains: list[str] = list(s.browser.blocked_domains)
        self._safe_url: str = s.browser.safe_url
        self._resize_w: int = s.browser.screenshot_resize_width
        self._resize_h: int = s.browser.screenshot_resize_height

        self._browser: zd.Browser | None = None
        self._page = None  # zendriver.Tab

    async def __aenter__(self) -> "ZenDriver":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the browser with anti-detection settings."""
        config = zd.Config()
        config.headless = self._headless
        config.sandbox = False

        config.add_argument("--disable-gpu")
        config.add_argument("--window-size=1920,1080")
        config.add_argument("--disable-blink-features=AutomationControlled")

        if self._chrome_binary:
            config.browser_executable_path = self._chrome_binary

        self._browser = await zd.start(config=config)
        self._page = self._browser.main_tab
        logger.info("Browser started (headless=%s)", self._headless)

    async def stop(self) -> None:
        """Shut down the browser cleanly."""
        if self._browser:
            try:
                await self._browser.stop()
            except Exception as e:
                logger.warning("Browser stop error (non-fatal): %s", e)
            finally:
                self._browser = None
                self._page = None
            logger.info("Browser stopped")

    def _require_page(self):
        if self._browser is None or self._page is None:
            raise DriverDisconnectedError("Browser not started or already stopped")
        return self._page

    async def _eval_json(self, expression: str) -> Any:
        page = self._require_page()
        raw = await page.evaluate(expression)
        if raw is None:
            return None
        return _json.loads(raw) if isinstance(raw, str) else raw

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def navigate(self, url: str) -> bool:
        """Navigate to *url* after the allow/deny check.

        Raises:
            DisallowedNavigationError: The URL violates the navigation policy.
        """
        if not self._browser:
            raise DriverDisconnectedError("Browser not started. Call start() first.")
        check_navigation_allowed(url, self._allowed_domains, self._blocked_domains)
        try:
            self._page = await self._browser.get(url)
            await self.wait_for_load(self._page_load_timeout)
            await asyncio.sleep(self._settle_delay)
            logger.info("Navigated to: %s", url)
        except asyncio.TimeoutError:
            logger.error("Navigation timeout: %s", url)
            return False
        except Exception as e:
            logger.error("Navigation error for %s: %s", url, e)
            return False
        await self._enforce_policy()
        return True

    async def _enforce_policy(self) -> None:
        """Leave a page that redirected outside the allow list."""
        current = await self.url()
        try:
            check_navigation_allowed(current, self._allowed_domains, self._blocked_domains)
        except DisallowedNavigationError:
            logger.warning("Redirected to disallowed URL %s; returning to %s", current, self._safe_url)
            self._page = await self._browser.get(self._safe_url)
            raise

    async def go_back(self) -> bool:
        page = self._require_page()
        try:
            await page.back()
            await self.wait_for_load(self._page_load_timeout)
            return True
        except Exception as e:
            logger.warning("go_back failed: %s", e)
            return False

    async def wait_for_load(self, timeout: float) -> bool:
        """Poll ``document.readyState`` until ``complete`` or *timeout* elapses."""
        page = self._require_page()
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                if await page.evaluate("document.readyState") == "complete":
                    return True
            except Exception as e:
                logger.debug("readyState probe failed: %s", e)
            await asyncio.sleep(0.25)
        logger.warning("Page did not finish loading within %.1fs", timeout)
        return False

    # ------------------------------------------------------------------
    # Page information
    # ------------------------------------------------------------------

    async def url(self) -> str:
        page = self._require_page()
        try:
            return await page.evaluate("window.location.href") or ""
        except Exception as e:
            logger.warning("Failed to get page URL: %s", e)
            return ""

    async def title(self) -> str:
        page = self._require_page()
        try:
            return await page.evaluate("document.title") or ""
        except Exception as e:
            logger.warning("Failed to get page title: %s", e)
            return ""

    async def is_connected(self) -> bool:
        if self._browser is None or self._page is None:
            return False
        try:
            await self._page.evaluate("1")
            return True
        except Exception:
            return False

    async def screenshot(self) -> bytes | None:
        """Capture a downscaled PNG screenshot."""
        page = self._require_page()
        try:
            png_bytes = await _cdp_screenshot(page)
            return _resize_png(png_bytes, self._resize_w, self._resize_h)
        except Exception as e:
            logger.error("Screenshot failed: %s", e)
            return None

    # ------------------------------------------------------------------
    # DOM access
    # ------------------------------------------------------------------

    async def capture_raw(self) -> dict[str, Any] | None:
        """Run the in-page walker and return ``{rootId, map}``."""
        try:
            data = await self._eval_json(_CAPTURE_JS)
        except DriverDisconnectedError:
            raise
        except Exception as e:
            logger.warning("DOM capture failed: %s", e)
            return None
        if not data or data.get("rootId") is None:
            return None
        return data

    async def query(self, selector: str) -> list[ElementInfo]:
        """Resolve *selector* in the live page.

        Raises:
            SelectorResolutionError: The selector is not valid CSS.
        """
        data = await self._eval_json(f"({_QUERY_JS})({_json.dumps(selector)})")
        if not data:
            return []
        if data.get("error"):
            raise SelectorResolutionError(f"Invalid selector: {data['error']}", selector=selector)
        return [
            ElementInfo(
                tag=m.get("tag", ""),
                xpath=m.get("xpath", ""),
                text=m.get("text", ""),
                attributes=m.get("attributes") or {},
                tag_path=m.get("tag_path") or [],
                visible=bool(m.get("visible", True)),
            )
            for m in data.get("matches", [])
        ]

    # ------------------------------------------------------------------
    # Interaction
    # ------------------------------------------------------------------

    async def click(self, selector: str, index: int = 0) -> bool:
        """Click the *index*-th match of *selector*.

        Strategy order:
          1. JS querySelectorAll()[index] → scrollIntoView → click
          2. zendriver select() (first match only) → CDP click
        """
        page = self._require_page()
        try:
            safe_sel = _json.dumps(selector)
            clicked = await page.evaluate(f"""
                (() => {{
                    const el = document.querySelectorAll({safe_sel})[{int(index)}];
                    if (!el) return false;
                    el.scrollIntoView({{block: 'center'}});
                    el.click();
                    return true;
                }})()
            """)
            if clicked:
                await asyncio.sleep(self._settle_delay)
                logger.info("Clicked (JS selector): %s [%d]", selector, index)
                return True
        except Exception as e:
            logger.debug("Click CSS strategy failed for '%s': %s", selector, e)

        if index == 0:
            try:
                element = await page.select(selector, timeout=self._action_timeout)
                if element:
                    await element.click()
                    await asyncio.sleep(self._settle_delay)
                    logger.info("Clicked (zendriver select): %s", selector)
                    return True
            except Exception as e:
                logger.debug("Click zendriver select failed for '%s': %s", selector, e)

        logger.warning("All click strategies failed for '%s'", selector)
        return False

    async def type_text(self, selector: str, text: str) -> bool:
        """Type into an input: CDP key events first, JS native setter as fallback."""
        page = self._require_page()
        try:
            element = await page.query_selector(selector)
            if element:
                await element.click()
                await asyncio.sleep(0.2)
                try:
                    await element.clear_input()
                except Exception as e:
                    logger.debug("clear_input failed (non-critical): %s", e)
                await element.send_keys(text)
                await self._fire_input_events(selector)
                logger.info("Typed (CSS element): %s", selector)
                return True
        except Exception as e:
            logger.debug("Type CSS strategy failed for '%s': %s", selector, e)

        return await self._set_value(selector, text)

    async def _set_value(self, selector: str, value: str) -> bool:
        page = self._require_page()
        try:
            safe_sel = _json.dumps(selector)
            safe_val = _json.dumps(value)
            done = await page.evaluate(f"""
                (() => {{
                    const el = document.querySelector({safe_sel});
                    if (!el) return false;
                    el.focus();
                    const nativeSetter = Object.getOwnPropertyDescriptor(
                        window.HTMLInputElement.prototype, 'value'
                    )?.set || Object.getOwnPropertyDescriptor(
                        window.HTMLTextAreaElement.prototype, 'value'
                    )?.set;
                    if (nativeSetter) nativeSetter.call(el, {safe_val});
                    else el.value = {safe_val};
                    el.dispatchEvent(new Event('input', {{bubbles: true}}));
                    el.dispatchEvent(new Event('change', {{bubbles: true}}));
                    return true;
                }})()
            """)
            if done:
                logger.info("Set value (JS setter): %s", selector)
                return True
        except Exception as e:
            logger.debug("JS setter failed for '%s': %s", selector, e)
        logger.warning("All type strategies failed for '%s'", selector)
        return False

    async def _fire_input_events(self, selector: str) -> None:
        """Dispatch input+change events so reactive frameworks pick up the value."""
        try:
            safe_sel = _json.dumps(selector)
            await self._require_page().evaluate(f"""
                (() => {{
                    const el = document.querySelector({safe_sel});
                    if (el) {{
                        el.dispatchEvent(new Event('input', {{bubbles: true}}));
                        el.dispatchEvent(new Event('change', {{bubbles: true}}));
                    }}
                }})()
            """)
        except Exception as e:
            logger.debug("_fire_input_events failed for '%s': %s", selector, e)

    async def clear(self, selector: str) -> bool:
        return await self._set_value(selector, "")

    async def press_key(self, key: str) -> bool:
        """Press a keyboard key via CDP, falling back to a synthetic KeyboardEvent."""
        page = self._require_page()
        try:
            await page.send(zd.cdp.input_.dispatch_key_event(type_="keyDown", key=key))
            await asyncio.sleep(0.05)
            await page.send(zd.cdp.input_.dispatch_key_event(type_="keyUp", key=key))
            await asyncio.sleep(self._settle_delay)
            logger.info("Pressed key via CDP: %s", key)
            return True
        except Exception as e:
            logger.debug("CDP key press failed for '%s': %s; trying JS fallback", key, e)
        try:
            safe_key = _json.dumps(key)
            await page.evaluate(f"""
                (() => {{
                    const key = {safe_key};
                    const target = document.activeElement || document.body;
                    target.dispatchEvent(new KeyboardEvent('keydown', {{key: key, bubbles: true, cancelable: true}}));
                    target.dispatchEvent(new KeyboardEvent('keyup', {{key: key, bubbles: true, cancelable: true}}));
                }})()
            """)
            await asyncio.sleep(self._settle_delay)
            logger.info("Pressed key via JS: %s", key)
            return True
        except Exception as e2:
            logger.warning("All key press strategies failed for '%s': %s", key, e2)
            return False

    async def scroll(self, direction: str = "down", selector: str | None = None) -> bool:
        """Scroll the window, or the container matched by *selector*, by one viewport."""
        page = self._require_page()
        sign = -1 if direction == "up" else 1
        try:
            if selector:
                safe_sel = _json.dumps(selector)
                moved = await page.evaluate(f"""
                    (() => {{
                        const el = document.querySelector({safe_sel});
                        if (!el) return false;
                        el.scrollBy(0, {sign} * Math.max(el.clientHeight * 0.9, 300));
                        return true;
                    }})()
                """)
                if not moved:
                    logger.warning("Scroll container not found: %s", selector)
                    return False
            else:
                await page.evaluate(f"window.scrollBy(0, {sign} * window.innerHeight * 0.9)")
            await asyncio.sleep(self._settle_delay)
            return True
        except Exception as e:
            logger.warning("Scroll failed: %s", e)
            return False

    async def at_scroll_end(self, selector: str | None = None) -> bool:
        """True when the window (or the *selector* container) is within 50px of its bottom."""
        page = self._require_page()
        safe_sel = _json.dumps(selector) if selector else "null"
        try:
            return bool(await page.evaluate(f"""
                (() => {{
                    const sel = {safe_sel};
                    const el = sel ? document.querySelector(sel) : null;
                    if (el) return el.scrollTop + el.clientHeight >= el.scrollHeight - 50;
                    const doc = document.documentElement;
                    return window.scrollY + window.innerHeight >= doc.scrollHeight - 50;
                }})()
            """))
        except Exception as e:
            logger.warning("Scroll-end probe failed: %s", e)
            return True

    async def select_option(self, selector: str, option: str) -> bool:
        """Select a dropdown option by value, then exact text, then partial text."""
        page = self._require_page()
        try:
            safe_sel = _json.dumps(selector)
            safe_val = _json.dumps(option)
            result = await page.evaluate(f"""
                (() => {{
                    const sel = document.querySelector({safe_sel});
                    if (!sel || !sel.options) return false;
                    const value = {safe_val};
                    const pick = (v) => {{
                        sel.value = v;
                        sel.dispatchEvent(new Event('input', {{bubbles: true}}));
                        sel.dispatchEvent(new Event('change', {{bubbles: true}}));
                        return true;
                    }};
                    if (Array.from(sel.options).some(o => o.value === value)) return pick(value);
                    const target = value.trim().toLowerCase();
                    for (const opt of sel.options) {{
                        if (opt.text.trim().toLowerCase() === target) return pick(opt.value);
                    }}
                    for (const opt of sel.options) {{
                        const optText = opt.text.trim().toLowerCase();
                        if (optText.includes(target) || target.includes(optText)) return pick(opt.value);
                    }}
                    return false;
                }})()
            """)
            if result:
                logger.info("Selected '%s' in %s", option, selector)
                return True
        except Exception as e:
            logger.warning("Select failed for '%s': %s", selector, e)
        return False

    async def set_checked(self, selector: str, checked: bool) -> bool:
        """Click a checkbox/radio only when its state differs from *checked*."""
        page = self._require_page()
        try:
            safe_sel = _json.dumps(selector)
            result = await page.evaluate(f"""
                (() => {{
                    const el = document.querySelector({safe_sel});
                    if (!el) return false;
                    if (el.checked !== {_json.dumps(bool(checked))}) el.click();
                    return true;
                }})()
            """)
            return bool(result)
        except Exception as e:
            logger.warning("set_checked failed for '%s': %s", selector, e)
            return False
