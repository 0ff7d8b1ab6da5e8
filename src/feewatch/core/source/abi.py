"""Fee collector contract ABI (FeesCollected event only)."""

FEES_COLLECTED_SIGNATURE = "FeesCollected(address,address,uint256,uint256)"

FEE_COLLECTOR_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "_token", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "_integrator", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "_integratorFee", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "_lifiFee", "type": "uint256"},
        ],
        "name": "FeesCollected",
        "type": "event",
    },
]
