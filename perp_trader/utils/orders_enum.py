from enum import Enum

class TimeInForce(Enum):
    GTC = "Gtc"  # Good till cancelled, rests on the book until filled
    IOC = "Ioc"  # Immediate or cancel
    ALO = "Alo"  # Add liquidity only (post-only)

class Grouping(Enum):
    NA = "na"
    POSITION_TPSL = "positionTpsl"  # trigger size tracks the position

class TriggerKind(Enum):
    STOP_LOSS = "sl"
    TAKE_PROFIT = "tp"

class OrderStatus(Enum):
    FILLED = "FILLED"
    RESTING = "RESTING"
    REJECTED = "REJECTED"
