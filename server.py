#!/usr/bin/env python3
"""
Billing Service - Entry Point
Точка входа для совместимости с workflow
"""

from billing.main import main
import asyncio

if __name__ == "__main__":
    asyncio.run(main())
