"""Pure domain layer: value objects, state machines and collaborator contracts."""
