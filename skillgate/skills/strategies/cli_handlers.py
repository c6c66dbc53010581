"""Fixed allow-list of public read-only HTTP wrappers for ``cli`` skills."""

from __future__ import annotations

from typing import Any, Callable
from urllib.parse import quote

import httpx

from skillgate.skills.models import ExecutionResult

STRATEGY = "cli"

CliHandler = Callable[[httpx.Client, str, dict[str, Any]], ExecutionResult]


def _value(items: Any, default: str = "?") -> str:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return str(items[0].get("value", default))
    return default


def _ok(text: str) -> ExecutionResult:
    return ExecutionResult(success=True, output=text, strategy=STRATEGY)


def _get_json(http: httpx.Client, url: str, **kwargs: Any) -> Any:
    response = http.get(url, **kwargs)
    response.raise_for_status()
    return response.json()


def weather_cli(http: httpx.Client, command_name: str, params: dict[str, Any]) -> ExecutionResult:
    location = params.get("location")
    if not location:
        return ExecutionResult.failure("weather requires a location parameter", strategy=STRATEGY)
    try:
        data = _get_json(http, f"https://wttr.in/{quote(str(location))}", params={"format": "j1"})
    except (httpx.HTTPError, ValueError) as exc:
        return ExecutionResult.failure(f"weather fetch failed: {exc}", strategy=STRATEGY)

    current = (data.get("current_condition") or [{}])[0]
    area = (data.get("nearest_area") or [{}])[0]
    city = _value(area.get("areaName"), str(location))
    description = _value(current.get("weatherDesc"), "Unknown")

    if command_name == "get_current":
        return _ok(
            f"{description} in {city}: {current.get('temp_F', '?')}°F ({current.get('temp_C', '?')}°C), "
            f"feels like {current.get('FeelsLikeF', current.get('temp_F', '?'))}°F. "
            f"Humidity {current.get('humidity', '?')}%, wind {current.get('windspeedMiles', '?')} mph."
        )

    if command_name == "get_moon_phase":
        astronomy = ((data.get("weather") or [{}])[0].get("astronomy") or [{}])[0]
        return _ok(
            f"Moon phase for {city}: {astronomy.get('moon_phase', 'Unknown')}. "
            f"Moonrise: {astronomy.get('moonrise', '?')}, Moonset: {astronomy.get('moonset', '?')}. "
            f"Illumination: {astronomy.get('moon_illumination', '?')}%."
        )

    region = _value(area.get("region"), "")
    country = _value(area.get("country"), "")
    try:
        days = int(params.get("days") or 3)
    except (TypeError, ValueError):
        days = 3
    header = city + (f", {region}" if region else "") + (f" ({country})" if country else "")
    lines = [
        f"**{header}** - {description}",
        f"Temperature: {current.get('temp_F', '?')}°F ({current.get('temp_C', '?')}°C), "
        f"feels like {current.get('FeelsLikeF', current.get('temp_F', '?'))}°F",
        f"Humidity: {current.get('humidity', '?')}%, Wind: {current.get('windspeedMiles', '?')} mph",
    ]
    forecasts = (data.get("weather") or [])[:days]
    if forecasts:
        lines.append("")
        lines.append(f"**{len(forecasts)}-Day Forecast:**")
        for day in forecasts:
            hourly = day.get("hourly") or []
            midday = hourly[4] if len(hourly) > 4 else {}
            lines.append(
                f"- {day.get('date', '')}: {_value(midday.get('weatherDesc'), '-')}, "
                f"{day.get('mintempF', '?')}-{day.get('maxtempF', '?')}°F, {midday.get('chanceofrain', '0')}% rain"
            )
    return _ok("\n".join(lines))


def _event_date(events: list[dict[str, Any]], action: str) -> str:
    for event in events:
        if event.get("eventAction") == action:
            return str(event.get("eventDate") or "-")
    return "-"


def _registrar(entities: list[dict[str, Any]]) -> str:
    for entity in entities:
        if "registrar" in (entity.get("roles") or []):
            vcard = entity.get("vcardArray") or []
            for entry in vcard[1] if len(vcard) > 1 else []:
                if isinstance(entry, list) and entry and entry[0] == "fn" and len(entry) > 3:
                    return str(entry[3])
    return "-"


def whois_lookup(http: httpx.Client, command_name: str, params: dict[str, Any]) -> ExecutionResult:
    try:
        if command_name == "ip_lookup":
            ip = params.get("ip")
            if not ip:
                return ExecutionResult.failure("IP lookup requires an ip parameter", strategy=STRATEGY)
            data = _get_json(http, f"https://rdap.org/ip/{quote(str(ip))}")
            cidrs = ", ".join(
                f"{c.get('v4prefix') or c.get('v6prefix') or '?'}/{c.get('length')}"
                for c in data.get("cidr0_cidrs") or []
            ) or "-"
            entities = ", ".join(e["handle"] for e in data.get("entities") or [] if e.get("handle")) or "-"
            return _ok(
                f"**IP: {ip}**\nNetwork: {data.get('name', '-')} ({data.get('handle', '-')})\n"
                f"CIDR: {cidrs}\nRange: {data.get('startAddress', '-')} - {data.get('endAddress', '-')}\n"
                f"Country: {data.get('country', '-')}\nEntities: {entities}"
            )

        domain = params.get("domain")
        if not domain:
            return ExecutionResult.failure("WHOIS requires a domain parameter", strategy=STRATEGY)
        data = _get_json(http, f"https://rdap.org/domain/{quote(str(domain))}")
    except (httpx.HTTPError, ValueError) as exc:
        return ExecutionResult.failure(f"WHOIS lookup failed: {exc}", strategy=STRATEGY)

    events = data.get("events") or []
    nameservers = ", ".join(ns["ldhName"] for ns in data.get("nameservers") or [] if ns.get("ldhName")) or "-"
    return _ok(
        f"**Domain: {domain}**\nRegistrar: {_registrar(data.get('entities') or [])}\n"
        f"Status: {', '.join(data.get('status') or []) or '-'}\nNameservers: {nameservers}\n"
        f"Registered: {_event_date(events, 'registration')}\nExpires: {_event_date(events, 'expiration')}\n"
        f"Last Updated: {_event_date(events, 'last changed')}"
    )


def _query_dns(http: httpx.Client, name: str, record_type: str) -> list[str]:
    response = http.get(
        "https://cloudflare-dns.com/dns-query",
        params={"name": name, "type": record_type},
        headers={"accept": "application/dns-json"},
    )
    if response.status_code >= 400:
        return []
    answers = response.json().get("Answer") or []
    return [f"{answer.get('data')} (TTL: {answer.get('TTL')}s)" for answer in answers]


def dns_lookup(http: httpx.Client, command_name: str, params: dict[str, Any]) -> ExecutionResult:
    domain = params.get("domain")
    if not domain:
        return ExecutionResult.failure("DNS lookup requires a domain parameter", strategy=STRATEGY)
    try:
        if command_name == "full_report":
            lines = [f"**DNS Report: {domain}**"]
            found = False
            for record_type in ("A", "AAAA", "MX", "NS", "TXT", "SOA"):
                records = _query_dns(http, str(domain), record_type)
                if records:
                    found = True
                    lines.append(f"\n**{record_type}:**")
                    lines.extend(f"  {record}" for record in records)
            if not found:
                lines.append("\nNo DNS records found.")
            return _ok("\n".join(lines).strip())

        record_type = str(params.get("type") or "A").upper()
        records = _query_dns(http, str(domain), record_type)
    except (httpx.HTTPError, ValueError) as exc:
        return ExecutionResult.failure(f"DNS lookup failed: {exc}", strategy=STRATEGY)
    if not records:
        return _ok(f"**{domain}** - No {record_type} records found.")
    return _ok("\n".join([f"**{domain} {record_type} Records:**", *[f"  {r}" for r in records]]))


def default_cli_handlers() -> dict[str, CliHandler]:
    return {
        "weather-cli": weather_cli,
        "whois-lookup": whois_lookup,
        "dns-lookup": dns_lookup,
    }
