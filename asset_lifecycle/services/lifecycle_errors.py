from __future__ import annotations


class LifecycleError(RuntimeError):
    category = "state"
    http_status = 409

    def with_asset_context(self, asset_code: str | None) -> "LifecycleError":
        if asset_code and not str(self).startswith("[PAT "):
            self.args = (f"[PAT {asset_code}] {self}",)
        return self


class RequiredFieldMissing(LifecycleError):
    category = "validation"
    http_status = 422

    def __init__(self, field: str, target_state: str | None = None):
        self.field = field
        self.target_state = target_state
        suffix = f" for {target_state}" if target_state else ""
        super().__init__(f"Required field missing{suffix}: {field}")


class MinimumLengthViolation(LifecycleError):
    category = "validation"
    http_status = 422

    def __init__(self, field: str, minimum: int):
        self.field = field
        self.minimum = minimum
        super().__init__(f"{field} must have at least {minimum} characters.")


class InvalidFieldValue(LifecycleError):
    category = "validation"
    http_status = 422

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class InvalidTransitionSource(LifecycleError):
    pass


class AwaitingInspectionDecisionRequired(InvalidTransitionSource):
    def __init__(self, asset_code: str | None = None):
        self.asset_code = asset_code
        label = f"Asset {asset_code}" if asset_code else "Asset"
        super().__init__(f"{label} is awaiting an inspection report; record a post-inspection decision first.")


class AlreadyReplaced(LifecycleError):
    pass


class IncomingAssetNotEligible(LifecycleError):
    pass


class ConcurrentModification(LifecycleError):
    pass


class AssetNotFound(LifecycleError):
    category = "not_found"
    http_status = 404

    def __init__(self, asset_ref):
        self.asset_ref = asset_ref
        super().__init__(f"Asset not found: {asset_ref}")


class UnauthenticatedActor(LifecycleError):
    category = "auth"
    http_status = 401

    def __init__(self):
        super().__init__("An authenticated actor is required for asset mutations.")
