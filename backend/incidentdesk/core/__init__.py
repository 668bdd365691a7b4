"""Domain primitives: roles, workflow, encryption and error taxonomy."""
