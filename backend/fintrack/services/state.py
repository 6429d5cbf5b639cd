from fintrack.core.cache import TimedCache
from fintrack.core.config import settings
from fintrack.services.audit import AuditSink, write_audit_entry

cache = TimedCache(redis_url=settings.redis_url, key_prefix=settings.redis_prefix)
audit_sink = AuditSink(writer=write_audit_entry, maxsize=settings.audit_queue_size)
