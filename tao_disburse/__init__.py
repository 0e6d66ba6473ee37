"""
TAO Disburse — batched payouts for the Bittensor network.

Splits a large recipient list into bounded batches, sends each batch as a
single atomic utility.batch_all extrinsic with bounded retries, and keeps a
ledger of settled and failed batches so an interrupted or partially failed
run can be resumed without paying anyone twice.
"""

__version__ = "0.1.0"
