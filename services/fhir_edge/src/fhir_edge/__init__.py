"""FHIR edge: per-caller ownership tracking in front of a FHIR server."""
