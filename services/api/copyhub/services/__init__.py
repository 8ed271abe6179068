"""Copy pipeline: accounts -> ledger -> signals -> fan-out -> command queue."""
