"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / not_found / block / unauthorized / conflict）
- code:        业务错误码（INVALID_SCHEDULE / INVALID_TRANSITION / VERSION_CONFLICT / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只需 raise，exception_handler 统一捕获并格式化响应。
PartialCascadeFailure 是唯一的例外：它只在 cascade 内部流转，被记录日志后吞掉，
不会作为失败返回给调用方。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500
    retryable = False

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入格式不对（日期、时间、缺字段）。400，不可重试。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class InvalidDoctorError(ValidationError):
    """引用的医生不存在、不是 doctor 角色或已停用。"""

    code = 'INVALID_DOCTOR'


class NotFoundError(BaseAppException):
    """patient / appointment / doctor / prescription 不存在。404。"""

    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


class BlockError(BaseAppException):
    """业务规则阻止操作。409。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class InvalidTransitionError(BlockError):
    """状态机不允许的 status 变化。"""

    code = 'INVALID_TRANSITION'


class UnauthorizedError(BaseAppException):
    """角色或 lab 不匹配。403。"""

    type = 'unauthorized'
    code = 'UNAUTHORIZED'
    http_status = 403


class ConflictError(BaseAppException):
    """
    乐观锁冲突：另一个请求先一步改了同一个 aggregate。

    与其他 409 不同，ConflictError 可重试：客户端重新读取后再提交即可。
    """

    type = 'conflict'
    code = 'VERSION_CONFLICT'
    http_status = 409
    retryable = True


class PartialCascadeFailure(BaseAppException):
    """
    Prescription 已提交，但后续 Appointment / Patient 更新失败。

    cascade 捕获后记录日志并交给 reconciliation 修复，不向调用方报错。
    """

    type = 'partial_cascade'
    code = 'PARTIAL_CASCADE_FAILURE'
    http_status = 500

    def __init__(self, message, prescription_id=None, step=None, **kwargs):
        self.prescription_id = prescription_id
        self.step = step
        super().__init__(message, **kwargs)
