"""Exception escalation and alert dispatch."""
