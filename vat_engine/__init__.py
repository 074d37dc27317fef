"""
VAT Settlement Engine
=====================

Polish VAT settlement and JPK_V7 compliance toolkit: exact-decimal VAT
derivation, period settlement with carry-forward, correction chains,
declaration generation and reliable submission to the tax authority.

Modules:
    periods          - Month / quarter tax period keys
    rates            - Effective-dated VAT rate table
    classifier       - GTU, procedure and split-payment markers
    calculator       - VAT amounts and transaction posting
    corrections      - Correction (delta) transactions
    settlement       - Period aggregation and carry-forward ledger
    compliance       - NIP checks, filing frequency and deadlines
    declaration      - JPK_V7M / JPK_V7K document generation
    signature        - Document and webhook signing
    gateway          - Tax authority HTTP client
    submission       - Submission lifecycle and retries
    batch            - Concurrent declaration runs for many clients
    repositories     - Tenant-scoped persistence boundaries
    config           - Engine configuration
    report_generator - Settlement and audit reporting with CSV/JSON export
    cli              - Command-line interface
"""

__version__ = "1.0.0"
__author__ = "Taofik Bishi"

from vat_engine.periods import PeriodKey
from vat_engine.rates import RateCode, RateResolver
from vat_engine.classifier import TransactionClassifier
from vat_engine.calculator import Transaction, TransactionInput, VatCalculator
from vat_engine.corrections import CorrectionEngine
from vat_engine.settlement import CarryForwardLedger, PeriodSettlement, SettlementAggregator
from vat_engine.compliance import ClientProfile
from vat_engine.declaration import DeclarationSerializer
from vat_engine.signature import HmacDocumentSigner
from vat_engine.gateway import HttpAuthorityGateway
from vat_engine.submission import SubmissionOrchestrator
from vat_engine.batch import BatchDeclarationRunner
from vat_engine.config import EngineConfig
from vat_engine.report_generator import ReportGenerator

__all__ = [
    "PeriodKey",
    "RateCode",
    "RateResolver",
    "TransactionClassifier",
    "Transaction",
    "TransactionInput",
    "VatCalculator",
    "CorrectionEngine",
    "CarryForwardLedger",
    "PeriodSettlement",
    "SettlementAggregator",
    "ClientProfile",
    "DeclarationSerializer",
    "HmacDocumentSigner",
    "HttpAuthorityGateway",
    "SubmissionOrchestrator",
    "BatchDeclarationRunner",
    "EngineConfig",
    "ReportGenerator",
]
