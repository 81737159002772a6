from .config import HIGH_LATENCY_THRESHOLD_MS
from .models import ProcessorHealth


def other_processor(name: str) -> str:
    return "fallback" if name == "default" else "default"


def choose_best_processor(
    default_health: ProcessorHealth,
    fallback_health: ProcessorHealth,
    high_latency_threshold_ms: int = HIGH_LATENCY_THRESHOLD_MS,
) -> str:
    """Decide qual processador tentar primeiro. Funcao pura, sem I/O."""

    # Os dois falhando: o com menos falhas consecutivas, empate fica no default
    if default_health.failing and fallback_health.failing:
        if default_health.consecutiveFailures <= fallback_health.consecutiveFailures:
            return "default"
        return "fallback"

    # Se um funciona e o outro nao, pega o que esta funcionando
    if not default_health.failing and fallback_health.failing:
        return "default"
    if default_health.failing and not fallback_health.failing:
        return "fallback"

    # Os dois saudaveis: so troca se o default estiver lento e o fallback bem mais rapido
    if (
        default_health.minResponseTime > high_latency_threshold_ms
        and fallback_health.minResponseTime < default_health.minResponseTime * 0.5
    ):
        return "fallback"

    return "default"
