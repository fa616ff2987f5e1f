"""
Lending Core

Loan servicing core: repayment schedule generation, waterfall payment
allocation and delinquency classification, using Decimal for all money math.
"""

__version__ = "1.0.0"
