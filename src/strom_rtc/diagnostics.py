"""Command-line helpers for strom-rtc diagnostics."""
from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import sys
from typing import Iterable, Sequence

import httpx

from .config import (
    DEFAULT_REQUEST_TIMEOUT,
    default_ice_config_url,
    parse_ice_configuration,
)
from .version import APP_VERSION

WEBRTC_PIP_HINT = (
    "Ensure PyAV and aiortc are installed inside the active environment "
    "(for example `pip install av aiortc`)."
)

WEBRTC_PREREQS_HINT = (
    "aiortc needs the FFmpeg, Opus and VPx shared libraries; install the "
    "distribution packages (libavdevice-dev, libopus-dev, libvpx-dev) before "
    "reinstalling the Python wheels from source."
)

NUMPY_INSTALL_HINT = (
    "Install NumPy inside the active environment (for example `pip install numpy`)."
)

TURN_HINT = (
    "The ICE configuration lists no TURN server; clients behind symmetric NAT "
    "will not be able to connect."
)


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    seen: set[str] = set()
    to_consider: Iterable[BaseException | None] = (
        exc,
        getattr(exc, "__cause__", None),
        getattr(exc, "__context__", None),
    )
    for candidate in to_consider:
        if candidate is None:
            continue
        text = str(candidate).strip() or type(candidate).__name__
        if text not in seen:
            details.append(text)
            seen.add(text)
    return " | ".join(details)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the diagnostics CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m strom_rtc.diagnostics",
        description="strom-rtc diagnostics helpers",
    )
    add_arguments(parser)
    return parser


def add_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--endpoint",
        help="WHIP/WHEP endpoint to probe (OPTIONS request and ICE configuration).",
    )
    parser.add_argument(
        "--ice-config-url",
        help="ICE configuration URL (defaults to <endpoint origin>/api/ice-servers).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_REQUEST_TIMEOUT,
        help="HTTP timeout in seconds for endpoint probes.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )


def diagnose_webrtc_stack() -> dict[str, object]:
    """Return diagnostic details about the WebRTC software stack."""

    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    versions: dict[str, str] = {}
    codecs: list[str] = []

    def mark_error(detail: str) -> None:
        nonlocal status
        status = "error"
        details.append(detail)

    def add_hint(text: str) -> None:
        if text not in hints:
            hints.append(text)

    modules = (
        ("numpy", "NumPy"),
        ("av", "PyAV"),
        ("aiortc", "aiortc"),
    )

    for module_name, friendly in modules:
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError:
            mark_error(f"{friendly} module not found.")
            add_hint(NUMPY_INSTALL_HINT if module_name == "numpy" else WEBRTC_PIP_HINT)
            continue
        except Exception as exc:  # pragma: no cover - depends on runtime environment
            mark_error(f"{friendly} import failed: {summarise_exception(exc)}")
            add_hint(WEBRTC_PREREQS_HINT)
            continue

        version = getattr(module, "__version__", None)
        if isinstance(version, str):
            versions[module_name] = version

        if module_name == "av" and not hasattr(module, "AudioFrame"):
            mark_error("PyAV AudioFrame support unavailable.")
            add_hint(WEBRTC_PIP_HINT)

        if module_name == "aiortc":
            try:
                sender = importlib.import_module("aiortc.rtcrtpsender")
                for kind in ("audio", "video"):
                    capabilities = sender.RTCRtpSender.getCapabilities(kind)
                    codecs.extend(codec.mimeType for codec in capabilities.codecs)
            except Exception as exc:  # pragma: no cover - depends on runtime env
                mark_error(f"aiortc runtime import failed: {summarise_exception(exc)}")
                add_hint(WEBRTC_PREREQS_HINT)
            else:
                if "audio/opus" not in codecs:
                    mark_error("aiortc reports no Opus encoder.")
                    add_hint(WEBRTC_PREREQS_HINT)

    payload: dict[str, object] = {"status": status, "details": details}
    if versions:
        payload["versions"] = versions
    if codecs:
        payload["codecs"] = sorted(set(codecs))
    if hints:
        payload["hints"] = hints
    return payload


async def probe_endpoint(
    endpoint: str, *, client: httpx.AsyncClient
) -> dict[str, object]:
    """Send an OPTIONS request to a signalling endpoint."""

    try:
        response = await client.options(endpoint)
    except httpx.HTTPError as exc:
        return {
            "status": "error",
            "url": endpoint,
            "details": [f"Request failed: {summarise_exception(exc)}"],
        }
    payload: dict[str, object] = {
        "status": "ok" if response.status_code < 400 else "error",
        "url": endpoint,
        "http_status": response.status_code,
    }
    allow = response.headers.get("allow") or response.headers.get("access-control-allow-methods")
    if allow:
        payload["allow"] = [method.strip().upper() for method in allow.split(",") if method.strip()]
    if response.status_code >= 400:
        payload["details"] = [f"Endpoint answered HTTP {response.status_code}"]
    return payload


def _redact(server: dict[str, object]) -> dict[str, object]:
    if "credential" in server:
        server["credential"] = "***"
    return server


async def probe_ice_configuration(
    url: str, *, client: httpx.AsyncClient
) -> dict[str, object]:
    """Fetch and validate an ICE configuration document."""

    try:
        response = await client.get(url)
        response.raise_for_status()
        policy = parse_ice_configuration(response.json())
    except httpx.HTTPError as exc:
        return {"status": "error", "url": url, "details": [summarise_exception(exc)]}
    except ValueError as exc:
        return {
            "status": "error",
            "url": url,
            "details": [f"Invalid ICE configuration: {summarise_exception(exc)}"],
        }

    has_turn = any(
        candidate.startswith(("turn:", "turns:"))
        for server in policy.ice_servers
        for candidate in server.urls
    )
    payload: dict[str, object] = {
        "status": "ok",
        "url": url,
        "ice_transport_policy": policy.ice_transport_policy,
        "ice_servers": [_redact(server.to_dict()) for server in policy.ice_servers],
    }
    if not has_turn:
        payload["hints"] = [TURN_HINT]
    return payload


async def collect_diagnostics(
    *,
    endpoint: str | None = None,
    ice_config_url: str | None = None,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> dict[str, object]:
    """Collect diagnostics payload used by the CLI."""

    payload: dict[str, object] = {
        "version": APP_VERSION,
        "webrtc": diagnose_webrtc_stack(),
    }
    if endpoint is None and ice_config_url is None:
        return payload

    owned = client is None
    http = client if client is not None else httpx.AsyncClient(timeout=timeout)
    try:
        if endpoint is not None:
            payload["endpoint"] = await probe_endpoint(endpoint, client=http)
            if ice_config_url is None:
                ice_config_url = default_ice_config_url(endpoint)
        if ice_config_url is not None:
            payload["ice"] = await probe_ice_configuration(ice_config_url, client=http)
    finally:
        if owned:
            await http.aclose()
    return payload


def _print_section(title: str, section: dict[str, object]) -> None:
    if section.get("status") == "ok":
        print(f"{title}: OK")
    else:
        print(f"{title} issues detected:")
    for detail in section.get("details", []) or []:
        print(f" - {detail}")
    hints_payload = section.get("hints")
    if hints_payload:
        print("Hints:")
        for hint in hints_payload:
            print(f" * {hint}")


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the diagnostics CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    return run_from_args(args)


def run_from_args(args: argparse.Namespace) -> int:
    payload = asyncio.run(
        collect_diagnostics(
            endpoint=args.endpoint,
            ice_config_url=args.ice_config_url,
            timeout=args.timeout,
        )
    )
    sections = [payload.get(key) for key in ("webrtc", "endpoint", "ice")]
    failed = any(isinstance(section, dict) and section.get("status") != "ok" for section in sections)

    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return 1 if failed else 0

    print(f"strom-rtc diagnostics (version {APP_VERSION})")
    webrtc_stack = payload.get("webrtc")
    if isinstance(webrtc_stack, dict):
        _print_section("WebRTC stack", webrtc_stack)
        versions = webrtc_stack.get("versions")
        if isinstance(versions, dict):
            for name, version in sorted(versions.items()):
                print(f" - {name} {version}")
        codecs = webrtc_stack.get("codecs")
        if codecs:
            print(f" - codecs: {', '.join(codecs)}")

    endpoint = payload.get("endpoint")
    if isinstance(endpoint, dict):
        _print_section(f"Endpoint {endpoint.get('url')}", endpoint)
        allow = endpoint.get("allow")
        if allow:
            print(f" - allowed methods: {', '.join(allow)}")

    ice = payload.get("ice")
    if isinstance(ice, dict):
        _print_section(f"ICE configuration {ice.get('url')}", ice)
        if ice.get("status") == "ok":
            print(f" - iceTransportPolicy: {ice.get('ice_transport_policy')}")
            for server in ice.get("ice_servers", []) or []:
                print(f" - {', '.join(server.get('urls', []))}")
    return 1 if failed else 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m strom_rtc.diagnostics`."""

    return run(argv)


__all__ = [
    "add_arguments",
    "build_parser",
    "collect_diagnostics",
    "diagnose_webrtc_stack",
    "main",
    "probe_endpoint",
    "probe_ice_configuration",
    "run",
    "run_from_args",
    "summarise_exception",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
