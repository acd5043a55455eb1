"""
ABI of the deployed Will contract.
"""

WILL_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "_recipient", "type": "address"}],
        "name": "setRecipient",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "address", "name": "newRecipient", "type": "address"}],
        "name": "changeRecipient",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "ping",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "deposit",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "claim",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "triggerReminder",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "recipient",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "startTime",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "pingedLast",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "internalType": "address", "name": "user", "type": "address"}],
        "name": "remindUser",
        "type": "event"
    }
]


def find_function(name: str, abi=None):
    """Return the ABI entry for a function, or None if the ABI lacks it."""
    for entry in (WILL_ABI if abi is None else abi):
        if entry.get("type") == "function" and entry.get("name") == name:
            return entry
    return None


def function_signature(entry) -> str:
    """Canonical signature used for the selector, e.g. ``setRecipient(address)``."""
    types = ",".join(arg["type"] for arg in entry.get("inputs", []))
    return f"{entry['name']}({types})"
