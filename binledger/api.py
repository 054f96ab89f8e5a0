import logging
from typing import Optional
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, configure_logging, get_settings
from .models import (
    Bin, UserPublic, DepositRequest, Reward, PointsBalance,
    CreateBinRequest, UpdateBinRequest, RegisterUserRequest, DepositCreateRequest,
    GrantPointsRequest, DebitPointsRequest, RedeemRewardRequest,
)
from .service import (
    LedgerService, NotFoundError, InvalidInputError, InsufficientBalanceError,
    CapacityExceededError, IdempotencyConflictError, StorageUnavailableError,
)

logger = logging.getLogger(__name__)


def create_app(
    service: Optional[LedgerService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    ledger_service = service or LedgerService(settings=settings)

    app = FastAPI(
        title="Smart Bin Ledger API",
        description="Deposits, points and rewards for smart waste bins",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger_service = ledger_service

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"code": InvalidInputError.code, "message": message}},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "smartbin-ledger"}

    @app.post("/smartbins", response_model=Bin, status_code=status.HTTP_201_CREATED, tags=["Bins"])
    def create_bin(request: CreateBinRequest) -> Bin:
        try:
            return ledger_service.create_bin(request.capacity, request.current_weight)
        except InvalidInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())

    @app.get("/smartbins", response_model=list[Bin], tags=["Bins"])
    def list_bins() -> list[Bin]:
        return ledger_service.list_bins()

    @app.get("/smartbins/{bin_id}", response_model=Bin, tags=["Bins"])
    def get_bin(bin_id: int) -> Bin:
        try:
            return ledger_service.get_bin(bin_id)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())

    @app.put("/smartbins/{bin_id}", response_model=Bin, tags=["Bins"])
    def update_bin(bin_id: int, request: UpdateBinRequest) -> Bin:
        try:
            return ledger_service.update_bin(bin_id, request.capacity, request.current_weight)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())
        except InvalidInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())

    @app.delete("/smartbins/{bin_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Bins"])
    def delete_bin(bin_id: int) -> Response:
        try:
            ledger_service.delete_bin(bin_id)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/users", response_model=UserPublic, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def register_user(request: RegisterUserRequest) -> UserPublic:
        try:
            user = ledger_service.register_user(request.email, request.password, request.points)
        except InvalidInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())
        return UserPublic.model_validate(user.model_dump())

    @app.get("/users", response_model=list[UserPublic], tags=["Users"])
    def list_users() -> list[UserPublic]:
        return [UserPublic.model_validate(u.model_dump()) for u in ledger_service.list_users()]

    @app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Users"])
    def delete_user(user_id: int) -> Response:
        try:
            ledger_service.delete_user(user_id)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/deposit", response_model=Bin, tags=["Deposits"])
    def record_deposit(request: DepositCreateRequest) -> Bin:
        try:
            return ledger_service.record_deposit(request.bin_id, request.weight)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())
        except InvalidInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_detail())
        except CapacityExceededError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())

    @app.get("/deposit", response_model=list[DepositRequest], tags=["Deposits"])
    def list_deposits() -> list[DepositRequest]:
        return ledger_service.list_deposits()

    @app.post("/points/grant", response_model=PointsBalance, tags=["Points"])
    def grant_points(request: GrantPointsRequest) -> PointsBalance:
        try:
            return ledger_service.grant_points(request.email, request.points, request.idempotency_key)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())
        except InvalidInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_detail())
        except IdempotencyConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())

    @app.post("/points/debit", response_model=PointsBalance, tags=["Points"])
    def debit_points(request: DebitPointsRequest) -> PointsBalance:
        try:
            return ledger_service.debit_points(request.email, request.points)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())
        except InvalidInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_detail())
        except InsufficientBalanceError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())

    @app.get("/points", response_model=int, tags=["Points"])
    def get_points(email: str) -> int:
        try:
            return ledger_service.get_points(email)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())

    @app.post("/rewards", response_model=Reward, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
    def redeem_reward(request: RedeemRewardRequest) -> Reward:
        try:
            return ledger_service.redeem_reward(request.email, request.points_required, request.amount)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_detail())
        except InvalidInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_detail())
        except InsufficientBalanceError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_detail())
        except StorageUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_detail())

    @app.get("/rewards", response_model=list[Reward], tags=["Rewards"])
    def list_rewards(email: Optional[str] = None) -> list[Reward]:
        return ledger_service.list_rewards(email)

    logger.info("Smart bin ledger API ready (capacity enforcement %s)",
                "on" if settings.enforce_capacity else "off")
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
