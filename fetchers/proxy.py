"""
Effective proxy resolution.

Priority: explicit argument > proxy environment variables > a shell probe of
the OS environment > none.
"""
import asyncio
import os
import re
import shlex
import sys
from typing import Dict, Optional
from urllib.parse import urlparse

import structlog

from config.settings import SHELL_PROBE_TIMEOUT_SECONDS

logger = structlog.get_logger()

PROXY_ENV_VARS = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "http_proxy",
    "https_proxy",
    "ALL_PROXY",
    "all_proxy",
)

_SHELL_PROXY_RE = re.compile(r"(?:HTTP_PROXY|HTTPS_PROXY|http_proxy|https_proxy)=(\S+)", re.IGNORECASE)


def shell_probe_command() -> str:
    if sys.platform == "win32":
        return "set http_proxy & set https_proxy & set HTTP_PROXY & set HTTPS_PROXY"
    # A login shell sources profile files, where proxies are usually exported
    shell = os.environ.get("SHELL") or "/bin/sh"
    return f"{shlex.quote(shell)} -lc env"


async def _probe_shell_environment(timeout: float = SHELL_PROBE_TIMEOUT_SECONDS) -> Optional[str]:
    """Ask the OS shell for proxy settings the process environment lacks"""
    try:
        proc = await asyncio.create_subprocess_shell(
            shell_probe_command(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug("proxy_shell_probe_failed", error=str(e))
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("proxy_shell_probe_timeout", timeout=timeout)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return None

    output = "\n".join(
        line for line in stdout.decode(errors="replace").splitlines() if "proxy" in line.lower()
    )
    if not output.strip():
        return None

    match = _SHELL_PROXY_RE.search(output)
    if match:
        return match.group(1)
    return None


class CachedShellProbe:
    """Runs the shell probe once per process and remembers its answer"""

    def __init__(self, probe=_probe_shell_environment):
        self._probe = probe
        self._probed = False
        self._result: Optional[str] = None

    async def __call__(self) -> Optional[str]:
        if not self._probed:
            self._result = await self._probe()
            self._probed = True
        return self._result


system_shell_probe = CachedShellProbe()


def _no_proxy_matches(url: Optional[str], environ: Dict[str, str]) -> bool:
    """Whether NO_PROXY / no_proxy excludes the URL's host"""
    if not url:
        return False
    no_proxy = environ.get("NO_PROXY") or environ.get("no_proxy")
    if not no_proxy:
        return False

    host = (urlparse(url).hostname or "").lower()
    if not host:
        return False

    for entry in no_proxy.split(","):
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry == "*":
            return True
        entry = entry.lstrip(".")
        if entry.startswith("*."):
            entry = entry[2:]
        if host == entry or host.endswith("." + entry):
            return True
    return False


async def resolve_proxy(
    explicit_proxy: Optional[str] = None,
    use_system_proxy: bool = True,
    url: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
    shell_probe=system_shell_probe,
) -> Optional[str]:
    """
    Resolve the proxy URL to use for a request, or None for a direct connection.

    Args:
        explicit_proxy: Proxy given by the caller; always wins.
        use_system_proxy: When False only the explicit proxy is honoured.
        url: Target URL, checked against NO_PROXY for environment-derived proxies.
        environ: Environment mapping, defaults to os.environ.
        shell_probe: Async callable returning a proxy found via the OS shell.
    """
    if explicit_proxy:
        logger.debug("proxy_explicit", proxy=explicit_proxy)
        return explicit_proxy

    if not use_system_proxy:
        logger.debug("proxy_system_disabled")
        return None

    environ = os.environ if environ is None else environ

    if _no_proxy_matches(url, environ):
        logger.debug("proxy_bypassed_by_no_proxy", url=url)
        return None

    for name in PROXY_ENV_VARS:
        value = environ.get(name)
        if value:
            logger.debug("proxy_from_environment", variable=name, proxy=value)
            return value

    probed = await shell_probe() if shell_probe else None
    if probed:
        logger.debug("proxy_from_shell_probe", proxy=probed)
        return probed

    return None


def playwright_proxy_settings(proxy_url: Optional[str]) -> Optional[Dict[str, str]]:
    """Translate a proxy URL into Playwright's proxy dict (credentials split out)"""
    if not proxy_url:
        return None

    parsed = urlparse(proxy_url if "://" in proxy_url else f"http://{proxy_url}")
    server = f"{parsed.scheme}://{parsed.hostname}"
    if parsed.port:
        server += f":{parsed.port}"

    settings = {"server": server}
    if parsed.username:
        settings["username"] = parsed.username
    if parsed.password:
        settings["password"] = parsed.password
    return settings
