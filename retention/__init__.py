"""Student retention tooling."""
