"""vault-unsealer.

Keeps every node of a Vault cluster unsealed without a human in the loop:
 - one watcher thread per node checks seal status and submits unseal tokens
 - nodes can be a static list or discovered (docker labels / DNS) and reconciled
 - failures are debounced into batched email alerts

Several instances can run side by side; unsealing is idempotent.
"""

__version__ = "0.1.0"
