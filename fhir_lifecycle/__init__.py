"""fhir_lifecycle: ordered CRUD lifecycle checks against a FHIR server."""
