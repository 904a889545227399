"""
burnbot: treasury buyback-and-burn bot for a Solana casino program.

Surplus SOL in the vault and treasury (above their fixed reserves) is spent
on a target token, which is then burned.

Execution modes:
  aggregator    : Jupiter swap, hourly cron
  bonding-curve : PumpPortal buy on the pump.fun curve, fast 10s loop
"""

__version__ = "0.1.0"
