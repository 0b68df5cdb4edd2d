"""Case fund ledger and settlement service"""
