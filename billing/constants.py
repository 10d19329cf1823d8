import re
from datetime import timezone, timedelta

# Часовой пояс для отображения дат администраторам (UTC+8, Гонконг)
DISPLAY_TZ = timezone(timedelta(hours=8))

# Названия тарифов в каталоге subscription_plans
PLAN_MONTHLY = "Monthly"
PLAN_YEARLY = "Yearly"
PLAN_TESTER = "Tester"
PLAN_ADDON = "Addon"

# Тарифы, которые истекают целиком через 30 дней
SHORT_PLANS = (PLAN_MONTHLY, PLAN_TESTER)

# Длительности
COIN_PERIOD = timedelta(days=30)
YEARLY_PERIOD = timedelta(days=365)
DEFAULT_PLAN_PERIOD_SECONDS = 30 * 24 * 60 * 60

# Метаданные платежа живут 24 часа
METADATA_TTL = timedelta(hours=24)

# Платёжный шлюз
DEFAULT_GATEWAY_BASE_URL = "https://api.airwallex.com/api/v1"
GATEWAY_TIMEOUT_SECONDS = 30
TOKEN_TTL_SECONDS = 50 * 60  # токен шлюза живёт 60 минут, кешируем на 50
DEFAULT_PAYMENT_METHOD = "airwallex"
DEFAULT_CANCELLATION_REASON = "requested_by_customer"

CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
PAYMENT_INTENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

# Повторы условной записи состояния подписки при конкурентном изменении
STATE_WRITE_ATTEMPTS = 3

# Подсказки для повторных запросов (секунды)
RETRY_AFTER_SECONDS = 5
RATE_LIMIT_RETRY_AFTER_SECONDS = 60

# Лимиты
MAX_MESSAGE_LENGTH = 4096  # Максимальная длина сообщения в Telegram
EXPIRATION_INTERVAL_SECONDS = 3600  # Интервал пересчёта подписок (1 час)
