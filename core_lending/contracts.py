"""
Contract Document Module

Generates the loan agreement document when a borrower accepts. The state
machine only depends on the ContractGenerator interface; TextContractGenerator
renders a plain-text contract, fingerprints it with SHA-256 and stores it.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING
import hashlib
import re
import uuid

from .amortization import AmortizationSummary, add_months
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .agreements import LoanAgreement


CONTRACT_CLAUSES = [
    "1. REPAYMENT: The Borrower agrees to repay the loan in equal monthly installments as specified above.",
    "2. DEFAULT: If any payment is more than 30 days late, the entire loan balance becomes immediately due.",
    "3. EARLY PAYMENT: The Borrower may prepay the loan in full or in part at any time without penalty.",
    "4. GOVERNING LAW: This agreement shall be governed by the laws of the jurisdiction where it is executed.",
    "5. SMART CONTRACT: If applicable, this agreement is secured by a blockchain smart contract for automated execution.",
    "6. DISPUTE RESOLUTION: Any disputes arising from this agreement shall be resolved through binding arbitration.",
    "7. ENTIRE AGREEMENT: This contract represents the complete agreement between the parties.",
]


@dataclass
class ContractDocument(StorageRecord):
    """Rendered contract for an accepted agreement"""
    agreement_id: str
    file_name: str
    content: str
    content_hash: str
    lender_name: str
    borrower_name: str

    def verify_hash(self) -> bool:
        return self.content_hash == hashlib.sha256(self.content.encode('utf-8')).hexdigest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractDocument':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class ContractGenerator(ABC):
    """Produces the contract document for an accepted agreement"""

    @abstractmethod
    def generate(self, agreement: 'LoanAgreement', summary: AmortizationSummary) -> ContractDocument:
        pass


class TextContractGenerator(ContractGenerator):
    """Plain-text contracts stored in the `contracts` table"""

    def __init__(self, storage: StorageInterface, table_name: str = "contracts"):
        self.storage = storage
        self.table_name = table_name

    def render(self, agreement: 'LoanAgreement', summary: AmortizationSummary,
               contract_date: datetime) -> str:
        start_date = (agreement.accepted_at or contract_date).date()
        end_date = add_months(start_date, agreement.duration_months)
        wallet_address = agreement.conditions.get('wallet_address')

        lines: List[str] = [
            "LOAN AGREEMENT CONTRACT",
            f"Contract Date: {contract_date.date().isoformat()}",
            f"Agreement ID: {agreement.id}",
            "",
            "PARTIES TO THE AGREEMENT",
            "LENDER:",
            f"    Name: {agreement.lender_name or '-'}",
            f"    Email: {agreement.lender_email or '-'}",
        ]
        if wallet_address:
            lines.append(f"    Wallet Address: {wallet_address}")
        lines += [
            "BORROWER:",
            f"    Name: {agreement.borrower_name or '-'}",
            f"    Email: {agreement.borrower_email or '-'}",
            "",
            "LOAN TERMS AND CONDITIONS",
            f"  * Principal Amount: {summary.principal.to_string()}",
            f"  * Interest Rate: {agreement.interest_rate}% per annum",
            f"  * Loan Duration: {agreement.duration_months} months",
            f"  * Purpose: {agreement.purpose}",
            f"  * Payment Method: {agreement.payment_method.value}",
            f"  * Start Date: {start_date.isoformat()}",
            f"  * End Date: {end_date.isoformat()}",
            f"  * Monthly Payment: {summary.monthly_payment.to_string()}",
            f"  * Total Repayment: {summary.total_repayment.to_string()}",
            f"  * Total Interest: {summary.total_interest.to_string()}",
            "",
            "TERMS AND CONDITIONS",
        ]
        lines += CONTRACT_CLAUSES
        lines += [
            "",
            "SIGNATURES",
            f"LENDER: ______________________   Print Name: {agreement.lender_name or '-'}",
            f"BORROWER: ____________________   Print Name: {agreement.borrower_name or '-'}",
        ]
        return "\n".join(lines) + "\n"

    def generate(self, agreement: 'LoanAgreement', summary: AmortizationSummary) -> ContractDocument:
        now = datetime.now(timezone.utc)
        content = self.render(agreement, summary, now)
        borrower_slug = re.sub(r'\s+', '_', agreement.borrower_name or 'borrower')

        document = ContractDocument(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            agreement_id=agreement.id,
            file_name=f"loan_contract_{borrower_slug}_{now.date().isoformat()}.txt",
            content=content,
            content_hash=hashlib.sha256(content.encode('utf-8')).hexdigest(),
            lender_name=agreement.lender_name or '',
            borrower_name=agreement.borrower_name or ''
        )
        self.storage.save(self.table_name, document.id, document.to_dict())
        return document

    def get_contract(self, agreement_id: str) -> Optional[ContractDocument]:
        """Most recent contract generated for an agreement"""
        documents = [
            ContractDocument.from_dict(d)
            for d in self.storage.find(self.table_name, {'agreement_id': agreement_id})
        ]
        if not documents:
            return None
        return max(documents, key=lambda d: d.created_at)
