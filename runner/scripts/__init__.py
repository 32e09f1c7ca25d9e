"""Runner scripts bundled with the agent (see runner.local_entry)."""
