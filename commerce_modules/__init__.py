"""
Commerce Modules.

Thin orchestration layers over the Commerce Kernel.  Each module contains:
- Domain models (the nouns)
- Pure calculators / engines
- Workflows (state machines)
- ORM mappings and storage ports
- A service that owns retries, locking and deadlines

Modules:
- documents: Proforma/tax invoices, purchase orders, debit/credit notes
- billing: Quarterly governance fee aggregation
- governance: Procurement rule evaluation
"""

from commerce_modules import billing, documents, governance

__all__ = ["billing", "documents", "governance"]
