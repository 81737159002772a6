from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional

TWO_PLACES = Decimal("0.01")
UNKNOWN_RESPONSE_TIME = 9999


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 em UTC com milissegundos e sufixo Z."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_timestamp(value: str) -> datetime:
    """Converte uma string ISO-8601 em datetime com fuso. Levanta ValueError se invalida."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid timestamp: {value!r}")
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_score(value: str) -> float:
    return parse_timestamp(value).timestamp()


def to_decimal(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"invalid amount: {value!r}") from e


def format_amount(value: Decimal) -> str:
    return str(to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


class PaymentRequest:
    def __init__(self, correlationId: str, amount: Decimal, requestedAt: str, enqueuedAt: Optional[str] = None):
        self.correlationId = correlationId
        self.amount = to_decimal(amount)
        self.requestedAt = requestedAt
        self.enqueuedAt = enqueuedAt or requestedAt

    def to_dict(self) -> Dict[str, str]:
        return {
            "correlationId": self.correlationId,
            "amount": str(self.amount),
            "requestedAt": self.requestedAt,
            "enqueuedAt": self.enqueuedAt,
        }

    def processor_payload(self) -> Dict:
        """Corpo enviado ao POST /payments do processador."""
        return {
            "correlationId": self.correlationId,
            "amount": float(self.amount),
            "requestedAt": self.requestedAt,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PaymentRequest":
        return cls(
            correlationId=data["correlationId"],
            amount=data["amount"],
            requestedAt=data["requestedAt"],
            enqueuedAt=data.get("enqueuedAt"),
        )


class ProcessorHealth:
    def __init__(
        self,
        name: str,
        failing: bool = True,
        minResponseTime: int = UNKNOWN_RESPONSE_TIME,
        lastCheckedAt: Optional[str] = None,
        consecutiveFailures: int = 0,
    ):
        self.name = name
        self.failing = failing
        self.minResponseTime = minResponseTime
        self.lastCheckedAt = lastCheckedAt
        self.consecutiveFailures = consecutiveFailures

    @classmethod
    def assume_failing(cls, name: str) -> "ProcessorHealth":
        return cls(name)

    def copy(self) -> "ProcessorHealth":
        return ProcessorHealth(**self.to_dict())

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "failing": self.failing,
            "minResponseTime": self.minResponseTime,
            "lastCheckedAt": self.lastCheckedAt,
            "consecutiveFailures": self.consecutiveFailures,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ProcessorHealth":
        return cls(
            name=data["name"],
            failing=bool(data.get("failing", True)),
            minResponseTime=int(data.get("minResponseTime", UNKNOWN_RESPONSE_TIME)),
            lastCheckedAt=data.get("lastCheckedAt"),
            consecutiveFailures=int(data.get("consecutiveFailures", 0)),
        )

    def __eq__(self, other):
        if not isinstance(other, ProcessorHealth):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (
            f"ProcessorHealth({self.name}, failing={self.failing}, "
            f"minResponseTime={self.minResponseTime}, consecutiveFailures={self.consecutiveFailures})"
        )


class ProcessedPayment:
    def __init__(self, correlationId: str, amount: Decimal, processorType: str, requestedAt: str, processedAt: str):
        self.correlationId = correlationId
        self.amount = to_decimal(amount)
        self.processorType = processorType
        self.requestedAt = requestedAt
        self.processedAt = processedAt

    def to_dict(self) -> Dict[str, str]:
        return {
            "correlationId": self.correlationId,
            "amount": str(self.amount),
            "processorType": self.processorType,
            "requestedAt": self.requestedAt,
            "processedAt": self.processedAt,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ProcessedPayment":
        return cls(
            correlationId=data["correlationId"],
            amount=data["amount"],
            processorType=data["processorType"],
            requestedAt=data["requestedAt"],
            processedAt=data["processedAt"],
        )


class ProcessorCounters:
    def __init__(self, totalRequests: int = 0, totalAmount: Decimal = Decimal("0")):
        self.totalRequests = totalRequests
        self.totalAmount = to_decimal(totalAmount)

    def add(self, amount: Decimal):
        self.totalRequests += 1
        self.totalAmount += to_decimal(amount)

    def to_dict(self) -> Dict:
        return {
            "totalRequests": self.totalRequests,
            "totalAmount": format_amount(self.totalAmount),
        }
