# escrow_sync — on-chain escrow events -> escrows/trades read model
