"""
Authorization predicates, one per guarded operation.

Services call these once at their entry point and raise UnauthorizedError
on a False result; handlers never branch on roles themselves.
"""

from app.models import User, UserRole, Loan, Transaction


def is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN


def can_manage_loans(user: User) -> bool:
    """Approve or reject loan applications."""
    return is_admin(user)


def can_self_register(role: UserRole, allow_admin_signup: bool) -> bool:
    return role != UserRole.ADMIN or allow_admin_signup


def can_adjust_balances(user: User) -> bool:
    """Back-office deposits and withdrawals."""
    return is_admin(user)


def can_pay_loan(user: User, loan: Loan) -> bool:
    return loan.borrower_id == user.id


def can_view_loan(user: User, loan: Loan) -> bool:
    return loan.borrower_id == user.id or is_admin(user)


def can_view_transaction(user: User, entry: Transaction) -> bool:
    return user.id in (entry.sender_id, entry.receiver_id) or is_admin(user)
