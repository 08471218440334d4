"""
The bundled ``network-diagnostics`` tool provider.

Exposes ping, traceroute, DNS and GeoIP lookups over MCP stdio. Every tool
asks the connected client for approval through elicitation before acting;
ping and traceroute publish live output on the event hub.
"""

import asyncio
import json
import logging
import os
import re
from typing import Annotated, Any, Dict, List, Optional, Type

import httpx
import uvicorn
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel, Field, create_model

from dab.models.approval import ApprovalDecision, decision_from_action
from dab.models.errors import ApprovalTransportError
from dab.models.tool import ToolResult
from dab.provider.commands import CommandRunner, execute_command, stream_command
from dab.provider.events import EventHub, create_event_app
from dab.services.approval_gate import ApprovalGate
from dab.services.interfaces.human_interface import ApprovalPresenter
from dab.services.stream_broker import new_correlation_id


logger = logging.getLogger(__name__)

GEOIP_DENIED_TEXT = "Request denied by user. IP geolocation lookup was not approved."
GEOIP_URL = "https://json.geoiplookup.io/{ip}"

MANUAL_PAGES = {
    "ping": ("man-ping", "Send ICMP ECHO_REQUEST packets to network hosts manual page"),
    "traceroute": ("man-traceroute", "Print the route packets trace to network host manual page"),
    "dig": ("man-dig", "DNS lookup utility manual page"),
}


class ApprovalForm(BaseModel):
    """Answer requested from the human before a command runs."""
    approved: bool = Field(title="Approve execution", description="Confirm to allow the command to execute")


_SCHEMA_TYPES = {"boolean": bool, "string": str, "integer": int, "number": float}


def form_from_schema(parameter_schema: Optional[Dict[str, Any]]) -> Type[BaseModel]:
    """Build the elicitation form for a flat JSON object schema.

    Elicitation only carries primitive properties; an empty schema falls back
    to ``ApprovalForm``.
    """
    properties = (parameter_schema or {}).get("properties") or {}
    if not properties:
        return ApprovalForm

    required = set(parameter_schema.get("required") or [])
    fields: Dict[str, Any] = {}
    for name, prop in properties.items():
        annotation = _SCHEMA_TYPES.get(prop.get("type"), str)
        field = Field(
            ... if name in required else prop.get("default"),
            title=prop.get("title"),
            description=prop.get("description")
        )
        fields[name] = (annotation if name in required else Optional[annotation], field)
    return create_model("ApprovalForm", **fields)


class ContextApprovalPresenter(ApprovalPresenter):
    """Asks the connected MCP client through ``ctx.elicit``."""

    def __init__(self, ctx: Context):
        self.ctx = ctx

    async def present_approval_prompt(self, prompt_text: str, parameter_schema: Dict[str, Any]) -> ApprovalDecision:
        result = await self.ctx.elicit(message=prompt_text, schema=form_from_schema(parameter_schema))
        data = None
        if result.action == "accept":
            data = result.data.model_dump() if hasattr(result.data, "model_dump") else dict(result.data)
        return decision_from_action(result.action, data)


def _flag(args: List[str], enabled: Optional[bool], flag: str) -> None:
    if enabled:
        args.append(flag)


def _option(args: List[str], value: Any, flag: str) -> None:
    if value is not None and value != "" and value is not False:
        args.extend([flag, str(value)])


def build_ping_args(
    host: str,
    count: int,
    packet_size: Optional[int] = None,
    ttl: Optional[int] = None,
    timeout: Optional[int] = None,
    wait_time: Optional[float] = None,
    interface: Optional[str] = None,
    source_address: Optional[str] = None,
    numeric_only: bool = False,
    quiet: bool = False,
    verbose: bool = False,
    ipv4_only: bool = False,
    ipv6_only: bool = False
) -> List[str]:
    args: List[str] = []
    _flag(args, ipv4_only, "-4")
    _flag(args, ipv6_only, "-6")
    _flag(args, numeric_only, "-n")
    _flag(args, quiet, "-q")
    _flag(args, verbose, "-v")
    _option(args, count, "-c")
    _option(args, wait_time, "-i")
    _option(args, ttl, "-m")
    _option(args, interface, "-I")
    _option(args, source_address, "-S")
    _option(args, packet_size, "-s")
    _option(args, timeout, "-t")
    args.append(host)
    return args


def build_traceroute_args(
    host: str,
    max_ttl: Optional[int] = None,
    first_ttl: Optional[int] = None,
    queries: Optional[int] = None,
    wait_time: Optional[float] = None,
    port: Optional[int] = None,
    interface: Optional[str] = None,
    source_address: Optional[str] = None,
    icmp_echo: bool = False,
    no_name_resolution: bool = False,
    as_lookup: bool = False,
    ipv4_only: bool = False,
    ipv6_only: bool = False
) -> List[str]:
    args: List[str] = []
    _flag(args, ipv4_only, "-4")
    _flag(args, ipv6_only, "-6")
    _flag(args, as_lookup, "-A")
    _flag(args, icmp_echo, "-I")
    _flag(args, no_name_resolution, "-n")
    _option(args, first_ttl, "-f")
    _option(args, interface, "-i")
    _option(args, max_ttl, "-m")
    _option(args, port, "-p")
    _option(args, queries, "-q")
    _option(args, source_address, "-s")
    _option(args, wait_time, "-w")
    args.append(host)
    return args


def build_dig_args(
    domain: Optional[str] = None,
    record_type: Optional[str] = None,
    server: Optional[str] = None,
    query_class: Optional[str] = None,
    port: Optional[int] = None,
    source_address: Optional[str] = None,
    reverse_lookup: Optional[str] = None,
    use_tcp: bool = False,
    timeout: Optional[int] = None,
    retries: Optional[int] = None,
    no_recursion: bool = False,
    dnssec: bool = False,
    short: bool = False,
    trace: bool = False,
    ipv4_only: bool = False,
    ipv6_only: bool = False
) -> List[str]:
    """Build ``dig`` arguments. A reverse lookup ignores domain and type."""
    if reverse_lookup:
        return ["-x", reverse_lookup]

    if not domain:
        raise ValueError("domain is required unless reverseLookup is given")

    args: List[str] = []
    if server:
        args.append(f"@{server}")
    _option(args, source_address, "-b")
    _option(args, query_class, "-c")
    _option(args, port, "-p")
    _flag(args, ipv4_only, "-4")
    _flag(args, ipv6_only, "-6")
    _flag(args, use_tcp, "+tcp")
    if timeout:
        args.append(f"+time={timeout}")
    if retries is not None:
        args.append(f"+retry={retries}")
    _flag(args, no_recursion, "+norecurse")
    _flag(args, dnssec, "+dnssec")
    _flag(args, short, "+short")
    _flag(args, trace, "+trace")
    _option(args, record_type, "-t")
    args.append(domain)
    return args


async def read_manual(command: str) -> str:
    """Render the local manual page for ``command`` as plain text."""
    env = {**os.environ, "MANPAGER": "cat", "MANWIDTH": "80"}
    try:
        process = await asyncio.create_subprocess_exec(
            "man", command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env
        )
        stdout, _ = await process.communicate()
    except OSError as e:
        logger.warning(f"Failed to read manual page for {command}: {e}")
        return f"Manual page for {command} is not available on this host."

    if process.returncode != 0 or not stdout:
        return f"Manual page for {command} is not available on this host."
    # Strip overstrike formatting
    return re.sub(r".\x08", "", stdout.decode(errors="replace"))


def _tool_output(result: ToolResult) -> str:
    """Hand a result to FastMCP; error results are raised as tool errors."""
    if result.is_error:
        raise ToolError(result.text())
    return result.text()


VERIFY_TRACEROUTE_PROMPT = """You are a network diagnostics assistant performing a traceroute verification workflow. Follow these steps EXACTLY:

STEP 1: Execute traceroute
|- Call the network-traceroute tool with host: "{host}"
|- Wait for the complete result

STEP 2: Process ALL hops from the traceroute result
|- Look at the JSON result and find the "hops" array
|- Count the TOTAL number of hops in the array
|- You MUST ping EVERY SINGLE hop - do not skip any

STEP 3: Ping each hop ONE BY ONE
|- For EACH hop in the hops array (from first to last):
    - host: <the ip address>
    - count: 3
|- Continue this process until you have pinged ALL hops in the array

STEP 4: Create a comprehensive summary
|- Create a table comparing each hop:
|- Highlight any significant RTT differences (>20ms variance)
|- Note any packet loss or unreachable hops

CRITICAL OUTPUT RULES:
|- You MUST process ALL hops - do not stop after 3 hops or any arbitrary number
|- Ping each hop INDIVIDUALLY and ONE AT A TIME
|- Do not summarize or skip hops
|- DO NOT output any explanatory text or commentary
|- ONLY output JSON tool calls - no other text
|- Execute all commands sequentially without intermediate explanations

Host to verify: {host}"""

DETAILED_TRACEROUTE_PROMPT = """You are a network analysis assistant. The user wants a detailed traceroute including geographic and ownership information.

First, call the network-traceroute tool with the host provided by the user.

When you receive the traceroute result, iterate through the hops array. For each hop, extract the ip address.

For each ip address you extracted:

a. Call the network-geoiplookup tool with the IP address.

b. Call the network-dnsLookup tool using the reverseLookup parameter with the IP address as its value.

After you have collected all the results, synthesize a final report. The report should be a list where each item represents a hop and includes: the hop number, IP address, RTT, the reverse DNS name (from dnsLookup), and the city, country, and ISP/owner (from geoiplookup).

Host to analyze: {host}"""


def create_provider_server(
    hub: EventHub,
    runner: Optional[CommandRunner] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> FastMCP:
    """Build the ``network-diagnostics`` MCP server."""
    runner = runner or CommandRunner()
    mcp = FastMCP("network-diagnostics")

    def gate_for(ctx: Context) -> ApprovalGate:
        return ApprovalGate(ContextApprovalPresenter(ctx))

    @mcp.tool(
        name="network-ping",
        description="Send ICMP ECHO_REQUEST packets to network hosts with real-time streaming updates via SSE."
    )
    async def network_ping(
        ctx: Context,
        host: Annotated[str, Field(description="The destination host name or IP address to ping (required)")],
        count: Annotated[int, Field(description="Stop after sending count ECHO_RESPONSE packets")],
        sessionId: Annotated[Optional[str], Field(description="Unique session ID for SSE streaming connection (optional - will be auto-generated if not provided)")] = None,
        packetSize: Annotated[Optional[int], Field(description="Number of data bytes to be sent. Default is 56")] = None,
        ttl: Annotated[Optional[int], Field(description="IP Time To Live for outgoing packets")] = None,
        timeout: Annotated[Optional[int], Field(description="Timeout in seconds before ping exits regardless of how many packets have been received")] = None,
        waitTime: Annotated[Optional[float], Field(description="Seconds to wait between sending each packet. Default is one second")] = None,
        interface: Annotated[Optional[str], Field(description="Source interface address or device name")] = None,
        sourceAddress: Annotated[Optional[str], Field(description="Source IP address of outgoing packets")] = None,
        numericOnly: Annotated[Optional[bool], Field(description="Numeric output only, no reverse name lookups")] = None,
        quiet: Annotated[Optional[bool], Field(description="Only display summary lines")] = None,
        verbose: Annotated[Optional[bool], Field(description="Verbose output")] = None,
        ipv4Only: Annotated[Optional[bool], Field(description="Use IPv4 only")] = None,
        ipv6Only: Annotated[Optional[bool], Field(description="Use IPv6 only")] = None,
    ):
        args = build_ping_args(
            host, count, packet_size=packetSize, ttl=ttl, timeout=timeout, wait_time=waitTime,
            interface=interface, source_address=sourceAddress, numeric_only=bool(numericOnly),
            quiet=bool(quiet), verbose=bool(verbose), ipv4_only=bool(ipv4Only), ipv6_only=bool(ipv6Only)
        )
        result = await stream_command(
            gate_for(ctx), runner, hub, "ping", args, f"ping {' '.join(args)}",
            correlation_id=sessionId or new_correlation_id(), operation="ping"
        )
        return _tool_output(result)

    @mcp.tool(
        name="network-traceroute",
        description="Print the route packets take to a network host with real-time streaming updates via SSE."
    )
    async def network_traceroute(
        ctx: Context,
        host: Annotated[str, Field(description="The destination host name or IP address to trace (required)")],
        sessionId: Annotated[Optional[str], Field(description="Unique session ID for SSE streaming connection (optional - will be auto-generated if not provided)")] = None,
        maxTtl: Annotated[Optional[int], Field(description="Maximum number of hops (max time-to-live). Default is 30")] = None,
        firstTtl: Annotated[Optional[int], Field(description="TTL to start with. Default is 1")] = None,
        queries: Annotated[Optional[int], Field(description="Number of probe packets per hop. Default is 3")] = None,
        waitTime: Annotated[Optional[float], Field(description="Seconds to wait for a probe response")] = None,
        port: Annotated[Optional[int], Field(description="Destination port base for probes")] = None,
        interface: Annotated[Optional[str], Field(description="Interface through which to send packets")] = None,
        sourceAddress: Annotated[Optional[str], Field(description="Alternative source address")] = None,
        icmpEcho: Annotated[Optional[bool], Field(description="Use ICMP ECHO instead of UDP datagrams")] = None,
        noNameResolution: Annotated[Optional[bool], Field(description="Print hop addresses numerically rather than symbolically")] = None,
        asLookup: Annotated[Optional[bool], Field(description="Turn on AS# lookups for each hop encountered")] = None,
        ipv4Only: Annotated[Optional[bool], Field(description="Explicitly force IPv4 tracerouting")] = None,
        ipv6Only: Annotated[Optional[bool], Field(description="Explicitly force IPv6 tracerouting")] = None,
    ):
        args = build_traceroute_args(
            host, max_ttl=maxTtl, first_ttl=firstTtl, queries=queries, wait_time=waitTime, port=port,
            interface=interface, source_address=sourceAddress, icmp_echo=bool(icmpEcho),
            no_name_resolution=bool(noNameResolution), as_lookup=bool(asLookup),
            ipv4_only=bool(ipv4Only), ipv6_only=bool(ipv6Only)
        )
        result = await stream_command(
            gate_for(ctx), runner, hub, "traceroute", args, f"traceroute {' '.join(args)}",
            correlation_id=sessionId or new_correlation_id(), operation="traceroute"
        )
        return _tool_output(result)

    @mcp.tool(name="network-dnsLookup", description="Perform DNS lookups using the dig command")
    async def network_dns_lookup(
        ctx: Context,
        domain: Annotated[Optional[str], Field(description="The domain name to query (required unless reverseLookup is given)")] = None,
        type: Annotated[Optional[str], Field(description="The resource record type to query (e.g., A, MX, NS, TXT, AAAA). Defaults to A")] = None,
        server: Annotated[Optional[str], Field(description="Name or IP address of the name server to query")] = None,
        queryClass: Annotated[Optional[str], Field(description="Query class (IN, CH, HS). Defaults to IN")] = None,
        port: Annotated[Optional[int], Field(description="Non-standard port number. Default is 53")] = None,
        sourceAddress: Annotated[Optional[str], Field(description="Source IP address of the query")] = None,
        reverseLookup: Annotated[Optional[str], Field(description="IPv4 or IPv6 address to reverse-resolve. When used, domain and type are ignored")] = None,
        useTcp: Annotated[Optional[bool], Field(description="Use TCP instead of UDP")] = None,
        timeout: Annotated[Optional[int], Field(description="Query timeout in seconds. Default is 5")] = None,
        retries: Annotated[Optional[int], Field(description="Number of UDP retries. Default is 2")] = None,
        noRecursion: Annotated[Optional[bool], Field(description="Disable recursion")] = None,
        dnssec: Annotated[Optional[bool], Field(description="Request DNSSEC records")] = None,
        short: Annotated[Optional[bool], Field(description="Terse answer with only the answer section")] = None,
        trace: Annotated[Optional[bool], Field(description="Trace the delegation path from the root servers")] = None,
        ipv4Only: Annotated[Optional[bool], Field(description="Use IPv4 only")] = None,
        ipv6Only: Annotated[Optional[bool], Field(description="Use IPv6 only")] = None,
    ):
        try:
            args = build_dig_args(
                domain, record_type=type, server=server, query_class=queryClass, port=port,
                source_address=sourceAddress, reverse_lookup=reverseLookup, use_tcp=bool(useTcp),
                timeout=timeout, retries=retries, no_recursion=bool(noRecursion), dnssec=bool(dnssec),
                short=bool(short), trace=bool(trace), ipv4_only=bool(ipv4Only), ipv6_only=bool(ipv6Only)
            )
        except ValueError as e:
            return _tool_output(ToolResult.from_text(f"Error: {e}", is_error=True))
        result = await execute_command(gate_for(ctx), runner, "dig", args, f"dig {' '.join(args)}")
        return _tool_output(result)

    @mcp.tool(
        name="network-geoiplookup",
        description="Fetches geographic location information for an IP address using the geoiplookup.io API"
    )
    async def network_geoip_lookup(
        ctx: Context,
        ip: Annotated[str, Field(description="The IP address to look up geographic information for (required)")],
    ):
        result = await geoip_lookup(gate_for(ctx), ip, http_client)
        return _tool_output(result)

    @mcp.prompt(
        name="network/verifyTraceroute",
        description="Guide an LLM to verify traceroute results by pinging each hop"
    )
    def verify_traceroute(
        host: Annotated[str, Field(description="The destination host name or IP address to trace and verify (required)")]
    ) -> str:
        return VERIFY_TRACEROUTE_PROMPT.format(host=host)

    @mcp.prompt(
        name="network/detailedTraceroute",
        description="Enriches traceroute output with reverse DNS lookups and geographic/ownership information for each hop."
    )
    def detailed_traceroute(
        host: Annotated[str, Field(description="The destination host name or IP address to trace with geographic enrichment (required)")]
    ) -> str:
        return DETAILED_TRACEROUTE_PROMPT.format(host=host)

    for command, (name, description) in MANUAL_PAGES.items():
        _register_manual(mcp, command, name, description)

    return mcp


def _register_manual(mcp: FastMCP, command: str, name: str, description: str) -> None:
    @mcp.resource(f"man://{command}", name=name, description=description, mime_type="text/plain")
    async def manual() -> str:
        return await read_manual(command)


async def geoip_lookup(gate: ApprovalGate, ip: str, client: Optional[httpx.AsyncClient] = None) -> ToolResult:
    """Approval-gated lookup against geoiplookup.io."""
    prompt = f"Allow network-diagnostics to look up IP {ip} using geoiplookup.io?"
    try:
        decision = await gate.request_approval(prompt, {
            "type": "object",
            "properties": {
                "approved": {
                    "type": "boolean",
                    "title": "Approve lookup",
                    "description": "Confirm to allow the IP geolocation lookup",
                }
            },
            "required": ["approved"],
        })
    except ApprovalTransportError as e:
        return ToolResult.from_text(f"Failed to request user approval: {e}", is_error=True)

    if not decision.approved:
        return ToolResult.from_text(GEOIP_DENIED_TEXT)

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=30.0)
    try:
        response = await client.get(GEOIP_URL.format(ip=ip))
        if response.status_code >= 400:
            return ToolResult.from_text(
                f"API request failed with status {response.status_code}: {response.reason_phrase}",
                is_error=True
            )
        return ToolResult.from_text(json.dumps(response.json(), indent=2))
    except (httpx.HTTPError, ValueError) as e:
        return ToolResult.from_text(f"Failed to fetch geolocation data: {e}", is_error=True)
    finally:
        if owns_client:
            await client.aclose()


async def run_provider(host: str = "localhost", port: int = 3001) -> None:
    """Serve the provider on stdio and its event hub over HTTP until stdin closes."""
    hub = EventHub()
    mcp = create_provider_server(hub)
    server = uvicorn.Server(uvicorn.Config(
        app=create_event_app(hub),
        host=host,
        port=port,
        log_config=None,
        access_log=False
    ))
    async def serve_events() -> None:
        try:
            await server.serve()
        except (OSError, SystemExit) as e:
            logger.error(f"Event server on {host}:{port} stopped: {e}")

    events_task = asyncio.create_task(serve_events())
    logger.info(f"Event server listening on {host}:{port}")
    try:
        await mcp.run_stdio_async()
    finally:
        server.should_exit = True
        await events_task
