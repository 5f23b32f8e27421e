"""
Loan Module

Loan, scheduled installment and received repayment records, their status
enumerations, and the repository the reconciliation core persists them through.
"""

from datetime import datetime, date
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .storage import StorageInterface, StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    DUE = "due"          # Outstanding amount remains
    REPAID = "repaid"    # Loan fully paid


class InstallmentStatus(Enum):
    """Scheduled installment states"""
    DUE = "due"          # Nothing applied yet
    PARTIAL = "partial"  # Part prepaid by spillover from the previous installment
    REPAID = "repaid"    # Fully settled


@dataclass
class Loan(StorageRecord):
    """Loan with its principal, term count and current outstanding amount"""
    user_id: str
    amount: int                 # Principal in minor units
    currency_code: str
    terms: int                  # Number of monthly installments
    processed_at: date          # Disbursement date, anchor of the schedule
    outstanding_amount: int
    status: LoanStatus = LoanStatus.DUE

    @property
    def is_repaid(self) -> bool:
        return self.status == LoanStatus.REPAID

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['processed_at'] = self.processed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            amount=data['amount'],
            currency_code=data['currency_code'],
            terms=data['terms'],
            processed_at=date.fromisoformat(data['processed_at']),
            outstanding_amount=data['outstanding_amount'],
            status=LoanStatus(data['status'])
        )


@dataclass
class ScheduledInstallment(StorageRecord):
    """One scheduled portion of a loan, due on a specific date"""
    loan_id: str
    term: int                   # 1-based creation sequence
    amount: int
    outstanding_amount: int
    currency_code: str
    due_date: date
    status: InstallmentStatus = InstallmentStatus.DUE

    @property
    def is_repaid(self) -> bool:
        return self.status == InstallmentStatus.REPAID

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['due_date'] = self.due_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScheduledInstallment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            term=data['term'],
            amount=data['amount'],
            outstanding_amount=data['outstanding_amount'],
            currency_code=data['currency_code'],
            due_date=date.fromisoformat(data['due_date']),
            status=InstallmentStatus(data['status'])
        )


@dataclass
class ReceivedRepayment(StorageRecord):
    """Append-only record of a payment received against a loan"""
    loan_id: str
    amount: int
    currency_code: str          # Passed through, not checked against the loan
    received_at: date

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['received_at'] = self.received_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'ReceivedRepayment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=data['amount'],
            currency_code=data['currency_code'],
            received_at=date.fromisoformat(data['received_at'])
        )


class LoanRepository:
    """
    Persistence collaborator for loans, installments and received repayments

    Installments are keyed ``{loan_id}_{term}`` so lookups by creation
    sequence never need a scan.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.installments_table = "scheduled_installments"
        self.repayments_table = "received_repayments"

    @staticmethod
    def installment_id(loan_id: str, term: int) -> str:
        return f"{loan_id}_{term}"

    def save_loan(self, loan: Loan) -> None:
        """Create or update a loan"""
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def find_loans_for_user(self, user_id: str) -> List[Loan]:
        """Get all loans owned by a user, oldest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {"user_id": user_id})]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def save_installment(self, installment: ScheduledInstallment) -> None:
        """Create or update a scheduled installment"""
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def get_installment(self, loan_id: str, term: int) -> Optional[ScheduledInstallment]:
        """Get the installment with the given creation sequence"""
        data = self.storage.load(self.installments_table, self.installment_id(loan_id, term))
        if data:
            return ScheduledInstallment.from_dict(data)
        return None

    def get_installments(self, loan_id: str) -> List[ScheduledInstallment]:
        """Get a loan's installments ordered by creation sequence"""
        installments = [
            ScheduledInstallment.from_dict(data)
            for data in self.storage.find(self.installments_table, {"loan_id": loan_id})
        ]
        installments.sort(key=lambda installment: installment.term)
        return installments

    def find_installment_by_due_date(self, loan_id: str, due_date: date) -> Optional[ScheduledInstallment]:
        """Get the earliest-created installment of a loan due on a date"""
        matches = [
            ScheduledInstallment.from_dict(data)
            for data in self.storage.find(self.installments_table, {
                "loan_id": loan_id,
                "due_date": due_date.isoformat()
            })
        ]
        if not matches:
            return None
        return min(matches, key=lambda installment: installment.term)

    def save_repayment(self, repayment: ReceivedRepayment) -> None:
        """Append a received repayment; existing records are never overwritten"""
        if self.storage.exists(self.repayments_table, repayment.id):
            raise ValueError(f"Received repayment {repayment.id} already recorded")
        self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())

    def get_repayments(self, loan_id: str) -> List[ReceivedRepayment]:
        """Get payment history for a loan, ordered by received date"""
        repayments = [
            ReceivedRepayment.from_dict(data)
            for data in self.storage.find(self.repayments_table, {"loan_id": loan_id})
        ]
        # Stable sort keeps insertion order for payments received the same day
        repayments.sort(key=lambda repayment: repayment.received_at)
        return repayments
