"""Provider adapters used by the orchestrator."""
