"""Job runner agent: polls the broker, runs jobs in worker processes, relays their traces."""
