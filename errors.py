"""
errors.py — exception taxonomy shared by the wizard, providers and lookup.

  AcquisitionError      decode / encode failure of a photo — re-prompt the same step
  ExtractionError       model call failed or returned unusable JSON — terminal for the attempt
  LookupTransportError  openFDA unreachable / non-200 — downgraded to NotFound by drug_lookup
  ConfigurationError    deployment setting is wrong (unknown provider, missing token)
  MissingCredentialError  the user has no API key yet; /setkey unblocks finalization
  WizardStateError      operation not valid in the wizard's current phase
"""
from __future__ import annotations


class ScannerError(Exception):
    """Base class for all scanner errors."""


class AcquisitionError(ScannerError):
    pass


class ExtractionError(ScannerError):
    pass


class LookupTransportError(ScannerError):
    pass


class ConfigurationError(ScannerError):
    pass


class MissingCredentialError(ConfigurationError):
    pass


class WizardStateError(ScannerError):
    pass
