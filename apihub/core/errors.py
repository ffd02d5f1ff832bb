from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    # validation
    INVALID_PARAMETER = "invalidParameter"
    INVALID_PARAMETER_VALUE = "invalidParameterValue"
    INCORRECT_PARAM_TYPE = "incorrectParamType"
    INVALID_URL_ESCAPE = "invalidURLEscape"
    REQUIRED_PARAMS_MISSING = "requiredParamsMissing"
    BAD_REQUEST_BODY = "badRequestBody"
    OVERLAPPING_QUERY_PARAMETER = "overlappingQueryParameter"
    UNSUPPORTED_FORMAT = "unsupportedFormat"
    UNSUPPORTED_API_TYPE = "unsupportedApiType"
    UNSUPPORTED_SOURCE_TYPE = "unsupportedSourceType"
    ALIAS_CONTAINS_FORBIDDEN_CHARS = "aliasContainsForbiddenChars"
    PACKAGE_ID_MISMATCH = "packageIdMismatch"
    FORMAT_NOT_SUPPORTED_FOR_BUILD_TYPE = "formatNotSupportedForBuildType"
    UNKNOWN_BUILD_TYPE = "unknownBuildType"
    INVALID_PACKAGE_ARCHIVE = "invalidPackageArchive"
    INVALID_PACKAGED_FILE = "invalidPackagedFile"
    VERSION_IS_EQUAL_TO_PREVIOUS_VERSION = "versionIsEqualToPreviousVersion"
    INVALID_PREVIOUS_VERSION_PACKAGE = "invalidPreviousVersionPackage"
    RELEASE_VERSION_DOESNT_MATCH_PATTERN = "releaseVersionDoesntMatchPattern"
    NO_PREVIOUS_VERSION = "noPreviousVersion"
    BUILD_ALREADY_FINISHED = "buildAlreadyFinished"
    BUILD_CONFLICT = "buildConflict"
    # authorization
    INSUFFICIENT_PRIVILEGES = "insufficientPrivileges"
    USER_ID_NOT_FOUND = "userIdNotFound"
    API_KEY_HEADER_EMPTY = "apiKeyHeaderEmpty"
    NOT_OWNER = "notOwner"
    # resource
    PACKAGE_NOT_FOUND = "packageNotFound"
    PACKAGE_ALREADY_EXISTS = "packageAlreadyExists"
    PUBLISHED_VERSION_NOT_FOUND = "publishedVersionNotFound"
    PUBLISHED_PACKAGE_VERSION_NOT_FOUND = "publishedPackageVersionNotFound"
    OPERATION_GROUP_NOT_FOUND = "operationGroupNotFound"
    OPERATION_GROUP_ALREADY_EXISTS = "operationGroupAlreadyExists"
    TRANSFORMED_DOCUMENTS_NOT_FOUND = "transformedDocumentsNotFound"
    CHANGES_ARE_EMPTY = "changesAreEmpty"
    OPERATIONS_ARE_EMPTY = "operationsAreEmpty"
    API_KEY_NOT_FOUND = "apiKeyNotFound"
    BUILD_NOT_FOUND = "buildNotFound"
    BUILD_PRUNED = "buildPruned"
    COMPARISON_NOT_FOUND = "comparisonNotFound"
    # capacity
    ARCHIVE_SIZE_EXCEEDED = "archiveSizeExceeded"
    BRANCH_CONTENT_SIZE_EXCEEDED = "branchContentSizeExceeded"
    # cluster / websocket
    UNABLE_TO_SELECT_WS_SERVER = "unableToSelectWsServer"
    CONNECTION_NOT_UPGRADED = "connectionNotUpgraded"
    # internal
    INTERNAL = "internalServerError"


class ApiHubError(RuntimeError):
    """Typed error surfaced to clients as ``{status, code, message, params, debug}``.

    ``message`` may contain ``$name`` placeholders which are substituted from
    ``params`` when rendered.
    """

    status_code: int = 500

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        params: dict[str, Any] | None = None,
        debug: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.params = dict(params or {})
        self.debug = debug
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.rendered_message())

    def rendered_message(self) -> str:
        rendered = self.message
        # longest names first so $packageId is not clobbered by $package
        for key in sorted(self.params, key=len, reverse=True):
            rendered = rendered.replace(f"${key}", str(self.params[key]))
        return rendered

    def to_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "status": self.status_code,
            "code": self.code.value,
            "message": self.rendered_message(),
        }
        if self.params:
            envelope["params"] = self.params
        if self.debug:
            envelope["debug"] = self.debug
        return envelope


class BadRequestError(ApiHubError):
    status_code = 400


class ForbiddenError(ApiHubError):
    status_code = 403


class NotFoundError(ApiHubError):
    status_code = 404


class ConflictError(ApiHubError):
    status_code = 409


def required_params_missing(*names: str) -> BadRequestError:
    return BadRequestError(
        ErrorCode.REQUIRED_PARAMS_MISSING,
        "Required parameters are missing: $params",
        params={"params": ", ".join(names)},
    )


def invalid_parameter_value(param: str, value: Any, debug: str | None = None) -> BadRequestError:
    return BadRequestError(
        ErrorCode.INVALID_PARAMETER_VALUE,
        "Value '$value' is not allowed for parameter $param",
        params={"param": param, "value": value},
        debug=debug,
    )


def incorrect_param_type(param: str, expected: str, debug: str | None = None) -> BadRequestError:
    return BadRequestError(
        ErrorCode.INCORRECT_PARAM_TYPE,
        "$param parameter should have $type type",
        params={"param": param, "type": expected},
        debug=debug,
    )


def insufficient_privileges(debug: str | None = None) -> ForbiddenError:
    return ForbiddenError(
        ErrorCode.INSUFFICIENT_PRIVILEGES,
        "You don't have enough privileges to perform this operation",
        debug=debug,
    )


def package_not_found(package_id: str) -> NotFoundError:
    return NotFoundError(
        ErrorCode.PACKAGE_NOT_FOUND,
        "Package with packageId = $packageId not found",
        params={"packageId": package_id},
    )


def archive_size_exceeded(limit_mb: int) -> BadRequestError:
    return BadRequestError(
        ErrorCode.ARCHIVE_SIZE_EXCEEDED,
        "Archive size exceeded. Archive size limit - $size",
        params={"size": f"{limit_mb} MB"},
    )
