"""
CLI Entry Adapter.

Responsibility:
- Receive user input from terminal
- Normalize to EntryRequest contract
- NO intent parsing, NO domain logic
"""

import uuid

from shared.models import EntryRequest


class CLIAdapter:
    """Command-line entry adapter bound to one domain."""

    def __init__(self, domain_id: str, session_id: str | None = None):
        self.domain_id = domain_id
        self.session_id = session_id or str(uuid.uuid4())[:8]

    def read_input(self, raw_input: str) -> EntryRequest:
        """Normalize raw CLI input to EntryRequest."""
        return EntryRequest(
            session_id=self.session_id,
            domain_id=self.domain_id,
            input_text=raw_input.strip(),
            metadata={"source": "cli"},
        )
