"""
Entity store helpers: conditional writes and conflict retry.

每个 aggregate 都有 version 列。写入走 save_versioned()：
    UPDATE ... SET version = version + 1 WHERE pk = ? AND version = ?
更新 0 行说明别人先写了 → ConflictError。

retry_on_conflict 把整个 read-modify-write 函数重跑一遍，
所以被包装的函数必须在函数体内重新读取 aggregate，不能复用外部传进来的旧对象。
"""

import functools
import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from ..exceptions import ConflictError

logger = logging.getLogger(__name__)


def save_versioned(instance, fields):
    model = type(instance)
    values = {name: getattr(instance, name) for name in fields}

    if any(f.name == 'updated_at' for f in model._meta.concrete_fields):
        instance.updated_at = timezone.now()
        values['updated_at'] = instance.updated_at

    updated = model.objects.filter(pk=instance.pk, version=instance.version).update(
        version=F('version') + 1,
        **values,
    )
    if updated == 0:
        raise ConflictError(
            message=f"{model.__name__} was modified by another request. Re-read and retry.",
            detail={'model': model.__name__, 'pk': str(instance.pk), 'expected_version': instance.version},
        )

    instance.version += 1
    return instance


def retry_on_conflict(func=None, *, attempts=None):
    """Re-run a read-modify-write service function when it loses a version race."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            max_attempts = attempts or getattr(settings, 'CONFLICT_RETRY_ATTEMPTS', 3)
            for attempt in range(1, max_attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except ConflictError as exc:
                    if attempt == max_attempts:
                        logger.warning(
                            "%s lost %d version races, giving up: %s",
                            fn.__name__, attempt, exc.detail,
                        )
                        raise
                    logger.info(
                        "%s conflict (attempt %d/%d), re-reading and retrying",
                        fn.__name__, attempt, max_attempts,
                    )

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


def create_with_sequence(model, field, stem, attempts=5, **values):
    """
    生成形如 <stem>-001 的顺序编号并插入。

    编号 = 已有同前缀记录数 + 1；并发插入撞到 unique 约束时顺延一位重试。
    """
    for attempt in range(attempts):
        count = model.objects.filter(**{f'{field}__startswith': f'{stem}-'}).count()
        code = f"{stem}-{count + 1 + attempt:03d}"
        try:
            with transaction.atomic():
                return model.objects.create(**{field: code}, **values)
        except IntegrityError:
            logger.info("%s %s already taken, trying next sequence", model.__name__, code)

    raise ConflictError(
        message=f"Could not allocate a unique {field} for {stem}.",
        code='SEQUENCE_EXHAUSTED',
        detail={'stem': stem, 'attempts': attempts},
    )
