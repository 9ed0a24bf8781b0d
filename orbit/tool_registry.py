"""
Tool Registry - explicit, ordered catalog of capabilities.
"""

from typing import Dict, Iterable, List, Optional


class ToolRegistry:
    """
    Registry for all tools. Tools are registered explicitly at startup,
    insertion order is preserved.

    Example:
        orbit.tools.register("send_email", tool)
        tool = orbit.tools.get("send_email")
        names = orbit.tools.list()
    """

    def __init__(self, config, logger):
        self.config = config
        self.logger = logger
        self._tools = {}

    def register(self, name: str, tool):
        """Register a tool."""
        if name in self._tools:
            self.logger.warning(f"  Replacing tool: {name}")
        self._tools[name] = tool
        self.logger.info(f"  [OK] Registered tool: {name}")

    def get(self, name: str):
        """Get a tool by name."""
        return self._tools.get(name)

    def list(self) -> List[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_all(self) -> Dict:
        """Get all tools."""
        return self._tools

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def filtered(self, allowed: Optional[Iterable[str]]) -> "ToolRegistry":
        """
        Registry view restricted to `allowed`.
        None, empty, or containing "*" means every tool.
        """
        allowed = list(allowed or [])
        if not allowed or "*" in allowed:
            return self
        view = ToolRegistry(self.config, self.logger)
        for name, tool in self._tools.items():
            if name in allowed:
                view._tools[name] = tool
        return view

    def catalog(self) -> str:
        """One line per tool: name, description and accepted argument names."""
        lines = []
        for name, tool in self._tools.items():
            params = ", ".join(tool.parameters) if tool.parameters else "none"
            lines.append(f"- {name}: {tool.description} (params: {params})")
        return "\n".join(lines)
