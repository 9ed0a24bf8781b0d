"""
Capability wrapper.
Wraps any callable taking (args, ctx) or (args) as a named tool agents can call.
"""

from typing import Callable, Dict, Any, List, Optional
import asyncio


class Tool:
    """
    Named capability with an explicit parameter list.

    Example:
        async def list_repos(args, ctx):
            return await github.repos(args["org"])

        tool = orbit.create_tool(
            name="list_repos",
            func=list_repos,
            description="List repositories of an organization",
            parameters=["org"],
            collects_data=True
        )
    """

    def __init__(self,
                 name: str,
                 func: Callable,
                 description: str,
                 parameters: Optional[List[str]] = None,
                 collects_data: Optional[bool] = None):
        self.name = name
        self.func = func
        self.description = description
        self.parameters = list(parameters or [])
        # None: any successful non-email call counts as gathering report data
        self.collects_data = collects_data

        # Stats
        self.call_count = 0
        self.error_count = 0

    def to_schema(self) -> Dict:
        """JSON Schema for the tool (OpenAI/Ollama compatible)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {
                        p: {"type": "string", "description": f"Parameter {p}"}
                        for p in self.parameters
                    },
                },
            },
        }

    async def _call(self, *call_args) -> Any:
        self.call_count += 1
        try:
            if asyncio.iscoroutinefunction(self.func):
                return await self.func(*call_args)
            return await asyncio.to_thread(self.func, *call_args)
        except Exception:
            self.error_count += 1
            raise

    async def invoke(self, args: Dict, ctx: Dict) -> Any:
        """Primary call shape: func(args, ctx)."""
        return await self._call(args, ctx)

    async def invoke_simple(self, args: Dict) -> Any:
        """Simplified call shape: func(args)."""
        return await self._call(args)

    def get_definition(self) -> Dict:
        """Get tool definition for LLM prompts."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": list(self.parameters)
        }

    def get_metrics(self) -> Dict:
        """Get tool metrics."""
        return {
            "name": self.name,
            "calls": self.call_count,
            "errors": self.error_count
        }
