"""ContextBuilder — assembles the system prompt for every call."""

from __future__ import annotations

from harness.agent.errors import ErrorLedger
from harness.agent.hooks import HookComposer


class ContextBuilder:
    """
    Builds the layered system prompt in a fixed order.

    Layers:
      1. Base instructions
      2. Middleware modifications (chained, registration order)
      3. Custom caller instructions
      4. Rolling summary of compacted history
      5. Recent errors from the ledger
    """

    def __init__(
        self,
        instructions: str,
        hooks: HookComposer,
        ledger: ErrorLedger,
        custom_instructions: str | None = None,
    ):
        self.instructions = instructions
        self.hooks = hooks
        self.ledger = ledger
        self.custom_instructions = custom_instructions or ""

    async def build(self, summary: str | None = None) -> str:
        """Build the full system prompt for one call."""
        prompt = await self.hooks.modify_system_prompt(self.instructions)
        if self.custom_instructions:
            prompt += f"\n\n## Custom Instructions\n{self.custom_instructions}"
        if summary:
            prompt += f"\n\n## Previous Context Summary\n{summary}"
        errors = self.ledger.format()
        if errors:
            prompt += f"\n\n{errors}"
        return prompt

