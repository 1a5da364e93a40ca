import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时任务丢失
    reject_on_worker_lost=True,
)
def resume_prescription_cascade(self, prescription_id: str):
    """
    重放处方 cascade 的 2–4 步。

    重试策略：
      - 最多重试 3 次
      - 指数退避：10s → 20s → 40s
      - 超出次数后留给 reconcile_recent_cascades 定时兜底
    """
    from clinic.exceptions import NotFoundError, PartialCascadeFailure
    from clinic.services.cascade import resume_cascade

    logger.info("[Celery][resume_prescription_cascade] prescription=%s (attempt %d/%d)",
                prescription_id, self.request.retries + 1, self.max_retries + 1)

    try:
        resume_cascade(prescription_id)
    except NotFoundError:
        logger.error("[Celery] Prescription %s 不存在，跳过", prescription_id)
        return False
    except PartialCascadeFailure as exc:
        logger.warning(
            "[Celery] prescription=%s 在 %s 步失败 (attempt %d): %s",
            prescription_id, exc.step, self.request.retries + 1, exc.message,
        )
        if self.request.retries < self.max_retries:
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.info("[Celery] 将在 %ds 后重试...", countdown)
            raise self.retry(exc=exc, countdown=countdown)
        logger.error("[Celery] prescription=%s 已达最大重试次数，等待定时 reconciliation", prescription_id)
        return False

    logger.info("[Celery] prescription=%s cascade 已补齐", prescription_id)
    return True


@shared_task
def repair_patient_projection(patient_id: str):
    from clinic.services.projector import repair_patient_references

    report = repair_patient_references(patient_id)
    return report.as_dict()


@shared_task
def reconcile_recent_cascades(hours: int = 24):
    """
    定时任务（CELERY_BEAT_SCHEDULE）：找出最近 N 小时内没走完的 cascade，逐个重放。
    单个失败不影响其他处方。
    """
    from clinic.exceptions import PartialCascadeFailure
    from clinic.services.cascade import find_incomplete_cascades, resume_cascade

    since = timezone.now() - timedelta(hours=hours)
    pending = find_incomplete_cascades(since)
    repaired, failed = [], []

    for prescription in pending:
        try:
            resume_cascade(str(prescription.id))
            repaired.append(prescription.prescription_code)
        except PartialCascadeFailure as exc:
            logger.warning("[Celery] %s 仍然失败 (step=%s): %s",
                           prescription.prescription_code, exc.step, exc.message)
            failed.append(prescription.prescription_code)

    logger.info("[Celery][reconcile_recent_cascades] checked=%d repaired=%d failed=%d",
                len(pending), len(repaired), len(failed))
    return {'checked': len(pending), 'repaired': repaired, 'failed': failed}
