import logging
import uuid


class _ContextDefaults(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'cid'):
            record.cid = '-'
        if not hasattr(record, 'attempt'):
            record.attempt = 0
        return True


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(name)s [cid=%(cid)s attempt=%(attempt)s]: %(message)s')
        handler.setFormatter(fmt)
        handler.addFilter(_ContextDefaults())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


def with_context(logger: logging.Logger, attempt: int = 0, cid: str | None = None):
    if cid is None:
        cid = uuid.uuid4().hex[:8]
    extra = {'cid': cid, 'attempt': attempt}
    return logging.LoggerAdapter(logger, extra), cid
