"""cascade_batch.services -- ledger dispatcher and polling loop."""
