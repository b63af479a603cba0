from tortoise import fields, models


class TokenDeployment(models.Model):
    """
    Factory RefundableTokenDeployed event (one per token address).
    Large on-chain ints stored as strings to avoid 64-bit overflow (maxSupply).
    """
    id = fields.CharField(max_length=100, pk=True)  # event id
    token_address = fields.CharField(max_length=42, index=True)  # lowercase

    deployer = fields.CharField(max_length=42)
    beneficiary = fields.CharField(max_length=42)
    name = fields.CharField(max_length=255)
    symbol = fields.CharField(max_length=64)
    max_supply = fields.CharField(max_length=80)  # uint256 as decimal string

    block_number = fields.BigIntField(index=True)
    tx_hash = fields.CharField(max_length=66)
    log_index = fields.IntField(default=0)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "deployments"
        indexes = (("token_address", "block_number"),)

    def __str__(self):
        return f"<TokenDeployment {self.symbol} {self.token_address}>"

    def to_dict(self):
        return {
            "id": self.id,
            "token": self.token_address,
            "deployer": self.deployer,
            "beneficiary": self.beneficiary,
            "name": self.name,
            "symbol": self.symbol,
            "maxSupply": self.max_supply,
            "blockNumber": str(self.block_number),
            "txHash": self.tx_hash,
        }


class SaleConfig(models.Model):
    """
    SaleCreated event. Append-only: a later event for the same token
    supersedes, it never mutates. The current config is picked at read time.
    """
    id = fields.CharField(max_length=100, pk=True)
    token_address = fields.CharField(max_length=42, index=True)

    sale_amount = fields.CharField(max_length=80)
    purchase_price = fields.CharField(max_length=80)  # funding units per whole token
    sale_start_block = fields.BigIntField()
    sale_end_block = fields.BigIntField()

    # Only set when the event carries the decay schedule
    refundable_decay_start_block = fields.BigIntField(null=True)
    refundable_decay_end_block = fields.BigIntField(null=True)
    refundable_bps_at_start = fields.IntField(null=True)

    block_number = fields.BigIntField(index=True)
    tx_hash = fields.CharField(max_length=66)
    log_index = fields.IntField(default=0)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "sale_configs"
        indexes = (("token_address", "block_number"),)

    def __str__(self):
        return f"<SaleConfig {self.token_address}@{self.block_number}>"

    @property
    def has_decay_schedule(self):
        return (
            self.refundable_decay_start_block is not None
            and self.refundable_decay_end_block is not None
            and self.refundable_bps_at_start is not None
        )

    def to_dict(self):
        return {
            "id": self.id,
            "token": self.token_address,
            "saleAmount": self.sale_amount,
            "purchasePrice": self.purchase_price,
            "saleStartBlock": str(self.sale_start_block),
            "saleEndBlock": str(self.sale_end_block),
            "refundableDecayStartBlock": _opt_str(self.refundable_decay_start_block),
            "refundableDecayEndBlock": _opt_str(self.refundable_decay_end_block),
            "refundableBpsAtStart": self.refundable_bps_at_start,
            "blockNumber": str(self.block_number),
            "txHash": self.tx_hash,
        }


class SaleActivity(models.Model):
    """
    Purchased / Refunded event. Never mutated; aggregation folds the full set.
    """
    KIND_PURCHASE = "purchase"
    KIND_REFUND = "refund"

    id = fields.CharField(max_length=100, pk=True)
    token_address = fields.CharField(max_length=42, index=True)
    kind = fields.CharField(max_length=16)

    account = fields.CharField(max_length=42, null=True, index=True)
    token_amount = fields.CharField(max_length=80)
    funding_amount = fields.CharField(max_length=80)

    block_number = fields.BigIntField(index=True)
    tx_hash = fields.CharField(max_length=66)
    log_index = fields.IntField(default=0)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "sale_activity"
        indexes = (("token_address", "block_number", "log_index"),)

    def __str__(self):
        return f"<SaleActivity {self.kind} {self.tx_hash}@{self.log_index}>"

    def to_dict(self):
        return {
            "id": self.id,
            "token": self.token_address,
            "kind": self.kind,
            "account": self.account,
            "tokenAmount": self.token_amount,
            "fundingAmount": self.funding_amount,
            "blockNumber": str(self.block_number),
            "txHash": self.tx_hash,
        }


class IndexerCheckpoint(models.Model):
    """
    Next block the poller will fetch. Rewinding it replays events,
    which projection absorbs as duplicates.
    """
    name = fields.CharField(max_length=64, pk=True)
    next_block = fields.BigIntField()
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "checkpoints"

    def __str__(self):
        return f"<IndexerCheckpoint {self.name} next={self.next_block}>"


def _opt_str(value):
    return str(value) if value is not None else None
