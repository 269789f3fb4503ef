# Credential pool module
from court_harvester.credentials.rotator import CredentialBudget, CredentialRotator, RotatorState
from court_harvester.credentials.store import load_credentials

__all__ = ["CredentialBudget", "CredentialRotator", "RotatorState", "load_credentials"]
