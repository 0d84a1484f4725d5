"""
Cart and stock reconciliation core for the record shop.
"""
