"""
Chain clients for the Fusion resolver.

- evm: web3 client (signing account, transactions, balances)
- icp: dfx CLI client (canister calls, ledger) and principal encoding
"""
