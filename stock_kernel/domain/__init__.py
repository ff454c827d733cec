"""Pure domain layer: enums, DTOs, policy and folding math. Zero I/O."""
