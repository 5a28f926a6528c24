"""Test package for Medical_FHIR_rev."""
