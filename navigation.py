#!/usr/bin/env python3
"""
Navigation session for one persistent browser tab.

The session keeps an explicit NavigationSessionState record (last path,
theme, language, dark mode) and, per request, picks one of three
transitions:

    FULL_WITH_AUTH   first visit, or the tab is on another host: inject the
                     dashboard auth tokens and do a full page load
    CLIENT_SIDE      tab is already on the dashboard: drive the app's own
                     router instead of reloading
    DIRECT_EXTERNAL  explicit target URL on another host: plain load, the
                     auth tokens never reach it

After navigating, a page-setup strategy re-applies zoom and pushes
language/theme only when they changed, reporting the settle delays so the
caller can wait before taking the screenshot; wait_until_ready then polls the
page itself when no fixed wait was requested. State is replaced only once
the whole sequence succeeded.
"""

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config import DEFAULT_WAIT_TIME, COLD_START_EXTRA_WAIT, LANGUAGE_SETTLE_MS, THEME_SETTLE_MS
from models import CaptureRequest, NavigationResult

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}

LOCAL_STORAGE_DEFAULTS = {
    "dockedSidebar": '"always_hidden"',
    "selectedTheme": '{"dark": false}',
}

PAGE_LOAD_TIMEOUT_MS = 3000


class CannotOpenPageError(RuntimeError):
    def __init__(self, status: int, url: str, detail: Optional[str] = None):
        message = f"Unable to open page: {url} ({status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.status = status
        self.url = url


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class TransitionKind(str, Enum):
    FULL_WITH_AUTH = "full-with-auth"
    CLIENT_SIDE = "client-side"
    DIRECT_EXTERNAL = "direct-external"


@dataclass(frozen=True)
class NavigationSessionState:
    status: SessionStatus = SessionStatus.UNINITIALIZED
    current_origin: Optional[str] = None
    last_path: Optional[str] = None
    last_theme: Optional[str] = None
    last_lang: Optional[str] = None
    last_dark: Optional[bool] = None


@dataclass(frozen=True)
class PageSetupResult:
    wait_ms: int = 0
    theme_changed: bool = False
    lang_changed: bool = False


def normalize_origin(url: str) -> str:
    """scheme://host[:port] with the scheme's default port dropped."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = parts.hostname
    if not scheme or not host:
        return url.rstrip('/').lower()
    if ':' in host:
        host = f"[{host}]"
    port = parts.port
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def hosts_match(url_a: str, url_b: str) -> bool:
    return normalize_origin(url_a) == normalize_origin(url_b)


def resolve_target(dashboard_url: str, page_path: str,
                   target_url: Optional[str] = None) -> Tuple[str, str]:
    """Return (absolute url, path relative to its origin) for a request."""
    if target_url:
        parts = urlsplit(target_url)
        path = parts.path or "/"
        if parts.query:
            path += f"?{parts.query}"
        return target_url, path
    path = page_path if page_path.startswith('/') else f"/{page_path}"
    return urljoin(normalize_origin(dashboard_url) + '/', path.lstrip('/')), path


def decide_transition(state: NavigationSessionState, dashboard_url: str,
                      target_url: Optional[str] = None,
                      current_url: Optional[str] = None) -> TransitionKind:
    """Pick the transition for a request.

    current_url is where the tab actually is; when it disagrees with the
    recorded origin (a load that failed after the tab moved) the tab is
    reloaded with auth instead of being routed in place.
    """
    if target_url and not hosts_match(target_url, dashboard_url):
        return TransitionKind.DIRECT_EXTERNAL
    if state.status is SessionStatus.UNINITIALIZED:
        return TransitionKind.FULL_WITH_AUTH
    if state.current_origin != normalize_origin(dashboard_url):
        return TransitionKind.FULL_WITH_AUTH
    if current_url is not None and not hosts_match(current_url, dashboard_url):
        return TransitionKind.FULL_WITH_AUTH
    return TransitionKind.CLIENT_SIDE


def build_auth_storage(dashboard_url: str, access_token: Optional[str]) -> Dict[str, str]:
    origin = normalize_origin(dashboard_url)
    storage = dict(LOCAL_STORAGE_DEFAULTS)
    storage["hassTokens"] = json.dumps({
        "access_token": access_token or "",
        "token_type": "Bearer",
        "expires_in": 1800,
        "hassUrl": origin,
        "clientId": f"{origin}/",
        "expires": 9999999999999,
        "refresh_token": "",
    })
    return storage


def auth_init_script(dashboard_url: str, storage: Dict[str, str]) -> str:
    # Init scripts run on every document in the tab; only the dashboard origin gets the tokens
    return (
        "(() => {\n"
        f"  if (window.location.origin !== {json.dumps(normalize_origin(dashboard_url))}) return;\n"
        f"  const storage = {json.dumps(storage)};\n"
        "  for (const [key, value] of Object.entries(storage)) {\n"
        "    window.localStorage.setItem(key, value);\n"
        "  }\n"
        "})();"
    )


SET_ZOOM_JS = "(zoom) => { document.body.style.zoom = String(zoom); }"

CLIENT_NAVIGATE_JS = """(path) => {
  const state = history.state;
  history.replaceState(state && state.root ? { root: true } : null, '', path);
  const event = new Event('location-changed');
  event.detail = { replace: true };
  window.dispatchEvent(event);
}"""

CLIENT_REMOUNT_JS = """(path) => {
  const fire = (p) => {
    history.replaceState(null, '', p);
    const event = new Event('location-changed');
    event.detail = { replace: true };
    window.dispatchEvent(event);
  };
  fire('/');
  fire(path);
}"""

PAGE_LOADED_JS = """() => {
  const haEl = document.querySelector('home-assistant');
  if (!haEl) return false;
  const mainEl = haEl.shadowRoot && haEl.shadowRoot.querySelector('home-assistant-main');
  if (!mainEl) return false;
  const resolver = mainEl.shadowRoot && mainEl.shadowRoot.querySelector('partial-panel-resolver');
  if (!resolver || resolver._loading) return false;
  const panel = resolver.children[0];
  if (!panel) return false;
  return !('_loading' in panel) || !panel._loading;
}"""

SELECT_LANGUAGE_JS = """(lang) => {
  const haEl = document.querySelector('home-assistant');
  if (haEl && haEl._selectLanguage) haEl._selectLanguage(lang, false);
}"""

# Blocks the frontend from saving the theme to the user's profile while applying it
SET_THEME_JS = """({ theme, dark }) => {
  const haEl = document.querySelector('home-assistant');
  if (!haEl) return;
  const conn = haEl.hass && haEl.hass.connection;
  const isThemeSave = (msg) => msg.type === 'frontend/set_user_data' && msg.key === 'theme';
  let origSend, origSendPromise;
  if (conn && conn.sendMessage) {
    origSend = conn.sendMessage.bind(conn);
    conn.sendMessage = (msg) => { if (!isThemeSave(msg)) origSend(msg); };
  }
  if (conn && conn.sendMessagePromise) {
    origSendPromise = conn.sendMessagePromise.bind(conn);
    conn.sendMessagePromise = (msg) => isThemeSave(msg) ? Promise.resolve(null) : origSendPromise(msg);
  }
  haEl.dispatchEvent(new CustomEvent('settheme', { detail: { theme, dark } }));
  if (conn) {
    setTimeout(() => {
      if (origSend) conn.sendMessage = origSend;
      if (origSendPromise) conn.sendMessagePromise = origSendPromise;
    }, 2000);
  }
}"""


class DashboardPageSetup:
    """Waits for the dashboard to render, then applies zoom, language and theme."""

    async def setup(self, page: Page, request: CaptureRequest,
                    state: NavigationSessionState) -> PageSetupResult:
        await self._wait_for_page_load(page)
        await page.evaluate(SET_ZOOM_JS, request.zoom)

        wait_ms = 0
        lang_changed = request.lang != state.last_lang
        if lang_changed:
            logger.debug(f"Applying language {request.lang or 'en'}")
            await page.evaluate(SELECT_LANGUAGE_JS, request.lang or "en")
            wait_ms += LANGUAGE_SETTLE_MS

        theme_changed = request.theme != state.last_theme or request.dark != state.last_dark
        if theme_changed:
            logger.debug(f"Applying theme {request.theme or 'default'} (dark: {request.dark})")
            await page.evaluate(SET_THEME_JS, {"theme": request.theme or "", "dark": request.dark})
            wait_ms += THEME_SETTLE_MS

        return PageSetupResult(wait_ms=wait_ms, theme_changed=theme_changed, lang_changed=lang_changed)

    async def _wait_for_page_load(self, page: Page):
        try:
            await page.wait_for_function(PAGE_LOADED_JS, timeout=PAGE_LOAD_TIMEOUT_MS, polling=100)
        except PlaywrightTimeoutError:
            logger.debug("Timeout waiting for dashboard to finish loading")


class ExternalPageSetup:
    """External pages carry no session state of ours; only zoom applies."""

    async def setup(self, page: Page, request: CaptureRequest,
                    state: NavigationSessionState) -> PageSetupResult:
        await page.evaluate(SET_ZOOM_JS, request.zoom)
        return PageSetupResult()


def get_page_setup(kind: TransitionKind):
    if kind is TransitionKind.DIRECT_EXTERNAL:
        return ExternalPageSetup()
    return DashboardPageSetup()


HASS_READY_JS = """() => {
  const haEl = document.querySelector('home-assistant');
  const hass = haEl && haEl.hass;
  return !!(hass && hass.connected !== false && hass.states && Object.keys(hass.states).length > 0);
}"""

LOADING_SELECTORS = "ha-circular-progress, .loading, .spinner, [loading], hui-card-preview"

LOADING_CLEARED_JS = """(selectors) => {
  const isVisible = (el) => {
    const style = window.getComputedStyle(el);
    return style.display !== 'none' && style.visibility !== 'hidden';
  };
  const busy = (root) => {
    if (Array.from(root.querySelectorAll(selectors)).some(isVisible)) return true;
    return Array.from(root.querySelectorAll('*')).some((el) => el.shadowRoot && busy(el.shadowRoot));
  };
  const haEl = document.querySelector('home-assistant');
  return !busy(haEl && haEl.shadowRoot ? haEl.shadowRoot : document);
}"""

DISMISS_TOASTS_JS = """() => {
  const haEl = document.querySelector('home-assistant');
  const notifyEl = haEl && haEl.shadowRoot && haEl.shadowRoot.querySelector('notification-manager');
  if (!notifyEl || !notifyEl.shadowRoot) return 0;
  const actions = Array.from(notifyEl.shadowRoot.querySelectorAll('ha-toast *[slot=action]'));
  actions.forEach((el) => el.click());
  return actions.length;
}"""

# Two animation frames: the first runs before the pending paint, the second after it
PAINT_SETTLED_JS = """() => new Promise((resolve) => {
  requestAnimationFrame(() => requestAnimationFrame(() => resolve(true)));
})"""

NETWORK_IDLE_TIMEOUT_MS = 5000
HASS_READY_TIMEOUT_MS = 10000
LOADING_TIMEOUT_MS = 15000


async def wait_until_ready(page: Page, navigation: NavigationResult):
    """Wait for the page to finish rendering instead of sleeping a fixed time.

    Each stage gives up quietly on timeout; a slow page is still captured.
    """
    if navigation.setup_changed:
        try:
            await page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            logger.debug("Network idle wait timed out after page setup")

    if not navigation.external:
        try:
            await page.wait_for_function(HASS_READY_JS, timeout=HASS_READY_TIMEOUT_MS, polling=100)
        except PlaywrightTimeoutError:
            logger.debug("Timeout waiting for entity states")

    try:
        await page.wait_for_function(LOADING_CLEARED_JS, arg=LOADING_SELECTORS,
                                     timeout=LOADING_TIMEOUT_MS, polling=100)
    except PlaywrightTimeoutError:
        logger.debug(f"Loading indicators still visible after {LOADING_TIMEOUT_MS}ms")

    if not navigation.external:
        dismissed = await page.evaluate(DISMISS_TOASTS_JS)
        if dismissed:
            logger.debug(f"Dismissed {dismissed} notification toast(s)")

    await page.evaluate(PAINT_SETTLED_JS)


class NavigationSession:
    def __init__(self, page: Page, dashboard_url: str, access_token: Optional[str] = None,
                 navigation_timeout_ms: int = 30000, cold_start: bool = False):
        self.page = page
        self.dashboard_url = dashboard_url
        self.access_token = access_token
        self.navigation_timeout_ms = navigation_timeout_ms
        self.cold_start = cold_start
        self.state = NavigationSessionState()
        self._auth_script_installed = False

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    def reset(self, page: Optional[Page] = None):
        """Forget everything applied to the tab, optionally swapping in a new one."""
        if page is not None:
            self.page = page
            self._auth_script_installed = False
        self.state = NavigationSessionState()

    async def navigate(self, request: CaptureRequest) -> NavigationResult:
        kind = decide_transition(self.state, self.dashboard_url, request.target_url, self.page.url)
        url, path = resolve_target(self.dashboard_url, request.page_path, request.target_url)

        try:
            return await self._navigate(request, kind, url, path)
        except (CannotOpenPageError, PlaywrightError):
            # The tab may already have left the page the state describes
            self.state = NavigationSessionState()
            raise

    async def _navigate(self, request: CaptureRequest, kind: TransitionKind,
                        url: str, path: str) -> NavigationResult:
        if kind is TransitionKind.FULL_WITH_AUTH:
            wait_ms = await self._full_navigation(url, inject_auth=True)
        elif kind is TransitionKind.DIRECT_EXTERNAL:
            wait_ms = await self._full_navigation(url, inject_auth=False)
        else:
            wait_ms = await self._client_navigation(url, path)

        if '/auth/' in self.page.url:
            logger.error(f"Redirected to login page {self.page.url}: the access token is invalid or expired. "
                         "Create a new long-lived access token in the dashboard profile.")

        # A full load starts from the injected defaults: default theme, light mode
        base_state = self.state
        if kind is not TransitionKind.CLIENT_SIDE:
            base_state = replace(base_state, last_theme=None, last_lang=None, last_dark=False)

        setup = await get_page_setup(kind).setup(self.page, request, base_state)

        new_state = replace(base_state, status=SessionStatus.READY,
                            current_origin=normalize_origin(url), last_path=path)
        if setup.lang_changed:
            new_state = replace(new_state, last_lang=request.lang)
        if setup.theme_changed:
            new_state = replace(new_state, last_theme=request.theme, last_dark=request.dark)
        self.state = new_state

        total = wait_ms + setup.wait_ms
        logger.debug(f"Navigation {kind.value} to {url} done, wait {total}ms")
        return NavigationResult(wait_ms=total,
                                setup_changed=setup.theme_changed or setup.lang_changed,
                                external=kind is TransitionKind.DIRECT_EXTERNAL)

    async def _full_navigation(self, url: str, inject_auth: bool) -> int:
        if inject_auth and not self._auth_script_installed:
            storage = build_auth_storage(self.dashboard_url, self.access_token)
            await self.page.add_init_script(auth_init_script(self.dashboard_url, storage))
            self._auth_script_installed = True

        logger.info(f"Navigating to: {url} (auth: {'yes' if inject_auth else 'no'})")
        try:
            response = await self.page.goto(url, timeout=self.navigation_timeout_ms)
        except PlaywrightError as e:
            raise CannotOpenPageError(0, url, str(e))
        if response is None or not response.ok:
            raise CannotOpenPageError(response.status if response is not None else 0, url)

        if self.state.status is SessionStatus.UNINITIALIZED and self.cold_start:
            return DEFAULT_WAIT_TIME + COLD_START_EXTRA_WAIT
        return DEFAULT_WAIT_TIME

    async def _client_navigation(self, url: str, path: str) -> int:
        try:
            if path == self.state.last_path:
                logger.info(f"Navigating to: {url} (mode: panel remount, same path)")
                await self.page.evaluate(CLIENT_REMOUNT_JS, path)
            else:
                logger.info(f"Navigating to: {url} (mode: client-side)")
                await self.page.evaluate(CLIENT_NAVIGATE_JS, path)
        except PlaywrightError as e:
            raise CannotOpenPageError(0, url, str(e))
        return DEFAULT_WAIT_TIME
