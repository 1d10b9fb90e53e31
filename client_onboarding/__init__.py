"""
Client Onboarding System

Orchestrates onboarding of financial-services clients: document collection,
identity verification, KYC/AML gating, compliance approval, account setup,
funding and progress tracking, driven by a workflow state machine.
"""

__version__ = "1.0.0"
