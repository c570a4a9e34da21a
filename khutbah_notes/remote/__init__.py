"""Remote collaborator interfaces and local adapters."""
