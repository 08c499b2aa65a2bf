import asyncio
import logging
import os
import random
import subprocess
import sys
from contextlib import asynccontextmanager
from typing import List

from playwright.async_api import async_playwright, Browser, BrowserContext, Page

from dictionaries import COOKIE_ACCEPT_SELECTORS, SHOW_MORE_TEXTS

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0 Safari/537.36"
)


async def _new_context(browser: Browser) -> BrowserContext:
    ua = os.getenv("USER_AGENT") or DEFAULT_USER_AGENT
    # light randomization to avoid looking fully static
    viewport = {
        "width": random.choice([1280, 1366, 1440, 1600]),
        "height": random.choice([720, 768, 900]),
    }
    return await browser.new_context(
        user_agent=ua,
        ignore_https_errors=True,
        viewport=viewport,
    )


@asynccontextmanager
async def browser_context(headless: bool = True):
    async with async_playwright() as p:
        browser = await _launch_with_fallback(p, headless=headless)
        context = await _new_context(browser)
        try:
            yield context
        finally:
            await context.close()
            await browser.close()


async def new_page(context: BrowserContext) -> Page:
    page = await context.new_page()
    page.set_default_timeout(int(os.getenv("PAGE_TIMEOUT_MS", "20000")))
    return page


async def gentle_scroll(page: Page, steps: int = 8, delay: int = 250):
    for _ in range(steps):
        await page.mouse.wheel(0, 1000)
        await asyncio.sleep(delay / 1000)


async def accept_cookies(page: Page) -> bool:
    """Click the first visible cookie-consent button, if any."""
    for selector in COOKIE_ACCEPT_SELECTORS:
        try:
            button = page.locator(selector).first
            if await button.is_visible(timeout=500):
                await button.click(timeout=2000)
                logger.debug("Accepted cookies via %s", selector)
                return True
        except Exception:
            # selector missing or detached, try the next one
            continue
    return False


async def click_show_more(page: Page, max_clicks: int = 5, delay: int = 800) -> int:
    """Expand "show more" style listings. Returns the number of clicks."""
    clicks = 0
    for _ in range(max_clicks):
        clicked = False
        for label in SHOW_MORE_TEXTS:
            try:
                button = page.get_by_text(label, exact=False).first
                if await button.is_visible(timeout=300):
                    await button.click(timeout=2000)
                    await asyncio.sleep(delay / 1000)
                    clicks += 1
                    clicked = True
                    break
            except Exception:
                continue
        if not clicked:
            break
    return clicks


async def frames_html(page: Page) -> List[str]:
    """HTML of every child frame that could be loaded."""
    contents = []
    for frame in page.frames:
        if frame == page.main_frame:
            continue
        try:
            contents.append(await frame.content())
        except Exception as e:
            logger.debug("Could not read frame %s: %s", frame.url, e)
    return contents


async def render_html(
    url: str,
    headless: bool = True,
    scroll: bool = True,
    expand: bool = False,
    include_frames: bool = False,
) -> str:
    """
    Load ``url`` in Chromium and return the rendered HTML.

    ``expand`` dismisses cookie banners and clicks "show more" buttons;
    ``include_frames`` appends the HTML of child frames (embedded job boards).
    """
    async with browser_context(headless=headless) as context:
        page = await new_page(context)
        await page.goto(url, wait_until="domcontentloaded")
        try:
            await page.wait_for_load_state("networkidle", timeout=8000)
        except Exception:
            logger.debug("Network never went idle for %s", url)

        if expand:
            await accept_cookies(page)
        if scroll:
            await gentle_scroll(page, steps=4)
        if expand:
            await click_show_more(page)

        html = await page.content()
        if include_frames:
            html += "".join(await frames_html(page))
        return html


async def _launch_with_fallback(p, headless: bool = True) -> Browser:
    """
    Launch Chromium, and if the cached browser is missing, install it on the
    fly, then retry once.
    """

    args = ["--disable-blink-features=AutomationControlled", "--no-sandbox"]

    try:
        return await p.chromium.launch(headless=headless, args=args)
    except Exception as exc:  # PlaywrightError is not exported at top-level
        msg = str(exc)
        if "Executable doesn't exist" not in msg:
            raise
        _install_chromium_browser()
        # Retry once after install
        return await p.chromium.launch(headless=headless, args=args)


def _install_chromium_browser():
    subprocess.run(
        [sys.executable, "-m", "playwright", "install", "chromium"],
        check=True,
    )
