#!/usr/bin/env python3
"""
VAT Settlement Engine - Entry Point

Polish VAT settlement and JPK_V7 compliance tool. Calculates VAT,
classifies transactions, settles monthly and quarterly periods with
carry-forward, and generates JPK_V7M / JPK_V7K documents.

Usage:
    python main.py calculate --net 1000 --rate 23
    python main.py rates --date 2010-06-01
    python main.py classify --cn 8471 --gross 20000
    python main.py settle --file data/sample_transactions.csv --period 2024-03
    python main.py declare --file data/sample_transactions.csv --profile data/sample_profile.json \\
        --period 2024-03 --schema "JPK_V7M(2)" --out jpk.xml
    python main.py deadlines --profile data/sample_profile.json --year 2024
"""

from vat_engine.cli import main

if __name__ == "__main__":
    main()
