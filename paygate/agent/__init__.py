# paygate/agent/__init__.py
"""
Agent authentication for wrapped endpoints.

Callers identify themselves with four headers:
- x-agent-wallet: the caller's wallet address
- x-agent-signature: signature over the canonical request message
- x-agent-timestamp: client timestamp (also used as the nonce)
- x-validator-txid: ledger transaction that registered the API's access rules

Key components:
- signature: canonical message construction and signature verification
- registry: fetches and decodes the authorization record from the ledger indexer
- validator: combines the two into a single allow/deny decision
"""
