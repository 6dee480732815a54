"""
Minimal stdio MCP server used by the end-to-end tests.

Run with: python weather_server.py
"""

import asyncio
import sys

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("weather")


@mcp.tool()
def get_weather(location: str) -> str:
    """Get the current weather for a location."""
    return f"Sunny, 21C in {location}"


@mcp.tool()
async def slow_forecast(seconds: float = 5.0) -> str:
    """Return a forecast after a delay."""
    await asyncio.sleep(seconds)
    return "Rain later"


@mcp.tool()
def broken_sensor() -> str:
    """Always fails."""
    raise ValueError("sensor offline")


if __name__ == "__main__":
    print("weather fixture server starting", file=sys.stderr)
    mcp.run()
