"""
Promotional coupon engine: coupon definitions, code issuance, validation,
discount calculation and the redemption ledger.
"""
