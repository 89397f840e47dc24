"""
Billing Modules.

Domain orchestration over the Billing Kernel.  Each module contains:
- Domain models (the nouns)
- Pure calculations
- Persistence (ORM + store)
- A service facade
- Configuration schema

Modules:
- Lease invoicing: recurring lease invoices, VAT normalization, late fees
"""
