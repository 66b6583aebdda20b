import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from . import __version__
from .auth import get_current_user
from .config import Settings, configure_logging, load_settings
from .db import SqlStore
from .errors import (
    ConflictError,
    IdentifierMismatchError,
    InconsistentStateError,
    NotFoundError,
    PartialWriteError,
    StoreError,
    TodoBoardError,
    ValidationError,
)
from .models import BoardCreate, BoardUpdate, CardCreate, CardUpdate, ListCreate, ListUpdate
from .repair import ReadRepair
from .schemas import (
    BoardOut,
    BoardsPage,
    BoardSummary,
    BoardView,
    CardOut,
    CardSummary,
    ErrorCode,
    ErrorResponse,
    Health,
    IdentityIn,
    ListOut,
    ListSummary,
    ListView,
    LoginIn,
    RegisterIn,
    TokenOut,
    UserOut,
    Version,
)
from .store import DocumentStore, MemoryStore
from .sync import Synchronizer
from .users import UserService

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFoundError, 404, ErrorCode.NOT_FOUND),
    (ValidationError, 422, ErrorCode.VALIDATION_ERROR),
    (ConflictError, 409, ErrorCode.CONFLICT),
    (InconsistentStateError, 409, ErrorCode.INCONSISTENT_STATE),
    (PartialWriteError, 500, ErrorCode.PARTIAL_WRITE),
    (IdentifierMismatchError, 500, ErrorCode.IDENTIFIER_MISMATCH),
    (StoreError, 500, ErrorCode.STORE_ERROR),
]

HTTP_ERROR_CODES = {401: ErrorCode.UNAUTHORIZED, 404: ErrorCode.NOT_FOUND, 409: ErrorCode.CONFLICT}
HTTP_MESSAGES = {401: "authentication required", 404: "not found", 409: "conflict"}


# === Helpers ===


def board_summary(doc: dict) -> BoardSummary:
    return BoardSummary(
        id=doc["id"],
        title=doc.get("title") or "",
        description=doc.get("description"),
        image=doc.get("image"),
    )


def board_out(doc: dict) -> BoardOut:
    return BoardOut(
        id=doc["id"],
        userId=doc["user_id"],
        title=doc["title"],
        description=doc.get("description"),
        image=doc.get("image"),
        version=doc.get("version", 1),
        lists=[ListSummary(id=e["id"], title=e.get("title") or "") for e in doc.get("lists") or []],
    )


def list_out(doc: dict) -> ListOut:
    return ListOut(
        id=doc["id"],
        boardId=doc["board_id"],
        title=doc["title"],
        version=doc.get("version", 1),
        cards=[
            CardSummary(id=e["id"], title=e.get("title") or "", createdAt=e.get("created_at"))
            for e in doc.get("cards") or []
        ],
    )


def card_out(doc: dict) -> CardOut:
    return CardOut(
        id=doc["id"],
        listId=doc["list_id"],
        title=doc["title"],
        createdAt=doc["created_at"],
        version=doc.get("version", 1),
    )


def user_out(doc: dict) -> UserOut:
    return UserOut(
        id=doc["id"],
        username=doc.get("username"),
        displayName=doc.get("display_name") or "",
        boards=[board_summary(b) for b in doc.get("boards") or []],
    )


def with_if_match(payload, if_match: Optional[str]):
    if if_match is None or payload.expected_version is not None:
        return payload
    try:
        version = int(if_match.strip().strip('"'))
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_if_match") from None
    return payload.model_copy(update={"expected_version": version})


def get_sync(request: Request) -> Synchronizer:
    return request.app.state.sync


def get_users(request: Request) -> UserService:
    return request.app.state.users


def build_store(settings: Settings) -> DocumentStore:
    if settings.store == "sql":
        return SqlStore(settings.database_url)
    return MemoryStore()


def create_app(settings: Optional[Settings] = None, store: Optional[DocumentStore] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)
    store = store if store is not None else build_store(settings)

    app = FastAPI(title="todoboard API", version=__version__)
    app.state.settings = settings
    app.state.store = store
    app.state.sync = Synchronizer(
        store,
        ReadRepair(store, reverse_scan=settings.repair_reverse_scan, budget=settings.repair_budget),
    )
    app.state.users = UserService(store)

    @app.exception_handler(TodoBoardError)
    async def todoboard_error_handler(request: Request, exc: TodoBoardError) -> JSONResponse:
        status, code = 500, ErrorCode.STORE_ERROR
        for error_type, error_status, error_code in ERROR_STATUS:
            if isinstance(exc, error_type):
                status, code = error_status, error_code
                break
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        body = ErrorResponse(error_code=code, message=str(exc))
        return JSONResponse(status_code=status, content=body.model_dump(mode="json"))

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
        code = HTTP_ERROR_CODES.get(exc.status_code, ErrorCode.VALIDATION_ERROR)
        logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.status_code, exc.detail)
        body = ErrorResponse(
            error_code=code,
            message=HTTP_MESSAGES.get(exc.status_code, "bad request"),
            detail=str(exc.detail),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"), headers=exc.headers)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    # === Health & metadata ===

    @app.get("/v1/health", response_model=Health)
    def health():
        return Health()

    @app.get("/v1/version", response_model=Version)
    def version():
        return Version(version=__version__)

    # === Accounts ===

    @app.post("/v1/users", response_model=UserOut, status_code=201)
    def register(payload: RegisterIn, users: UserService = Depends(get_users)):
        return user_out(users.register(payload.username, payload.password, payload.displayName))

    @app.post("/v1/sessions", response_model=TokenOut)
    def login(payload: LoginIn, users: UserService = Depends(get_users)):
        try:
            user = users.authenticate(payload.username, payload.password)
        except NotFoundError:
            raise HTTPException(status_code=401, detail="invalid_credentials") from None
        return TokenOut(accessToken=user["id"], userId=user["id"])

    @app.post("/v1/identities", response_model=TokenOut)
    def identity_login(payload: IdentityIn, users: UserService = Depends(get_users)):
        user = users.find_or_create_external(payload.externalId, payload.displayName)
        return TokenOut(accessToken=user["id"], userId=user["id"])

    @app.get("/v1/me", response_model=UserOut)
    def me(user: dict = Depends(get_current_user), sync: Synchronizer = Depends(get_sync)):
        return user_out(sync.load_user(user["id"]).doc)

    # === Boards ===

    @app.get("/v1/boards", response_model=BoardsPage)
    def list_boards(user: dict = Depends(get_current_user), sync: Synchronizer = Depends(get_sync)):
        loaded = sync.load_user(user["id"])
        boards = [board_summary(b) for b in loaded.doc.get("boards") or []]
        return BoardsPage(boards=boards, warnings=loaded.warnings)

    @app.post("/v1/boards", response_model=BoardOut, status_code=201)
    def create_board(
        payload: BoardCreate,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        return board_out(sync.create_board(user["id"], payload))

    @app.get("/v1/boards/{board_id}", response_model=BoardView)
    def get_board(
        board_id: str,
        response: Response,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        loaded = sync.load_board(user["id"], board_id)
        response.headers["ETag"] = f'"{loaded.doc.get("version", 1)}"'
        return BoardView(board=board_out(loaded.doc), warnings=loaded.warnings)

    @app.patch("/v1/boards/{board_id}", response_model=BoardOut)
    def update_board(
        board_id: str,
        payload: BoardUpdate,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
        if_match: Optional[str] = Header(default=None, alias="If-Match"),
    ):
        payload = with_if_match(payload, if_match)
        return board_out(sync.update_board(user["id"], board_id, payload))

    @app.delete("/v1/boards/{board_id}", status_code=204)
    def delete_board(
        board_id: str,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        sync.delete_board(user["id"], board_id)
        return Response(status_code=204)

    # === Lists ===

    @app.post("/v1/boards/{board_id}/lists", response_model=ListOut, status_code=201)
    def create_list(
        board_id: str,
        payload: ListCreate,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        sync.get_board(user["id"], board_id)
        return list_out(sync.create_list(board_id, payload))

    @app.get("/v1/boards/{board_id}/lists/{list_id}", response_model=ListView)
    def get_list(
        board_id: str,
        list_id: str,
        response: Response,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        sync.get_board(user["id"], board_id)
        loaded = sync.load_list(board_id, list_id)
        response.headers["ETag"] = f'"{loaded.doc.get("version", 1)}"'
        return ListView(list_=list_out(loaded.doc), warnings=loaded.warnings)

    @app.patch("/v1/boards/{board_id}/lists/{list_id}", response_model=ListOut)
    def update_list(
        board_id: str,
        list_id: str,
        payload: ListUpdate,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
        if_match: Optional[str] = Header(default=None, alias="If-Match"),
    ):
        sync.get_board(user["id"], board_id)
        payload = with_if_match(payload, if_match)
        return list_out(sync.update_list(board_id, list_id, payload))

    @app.delete("/v1/boards/{board_id}/lists/{list_id}", status_code=204)
    def delete_list(
        board_id: str,
        list_id: str,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        sync.get_board(user["id"], board_id)
        sync.delete_list(board_id, list_id)
        return Response(status_code=204)

    # === Cards ===

    @app.post("/v1/boards/{board_id}/lists/{list_id}/cards", response_model=CardOut, status_code=201)
    def create_card(
        board_id: str,
        list_id: str,
        payload: CardCreate,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        sync.get_board(user["id"], board_id)
        sync.get_list(board_id, list_id)
        return card_out(sync.create_card(list_id, payload))

    @app.get("/v1/boards/{board_id}/lists/{list_id}/cards/{card_id}", response_model=CardOut)
    def get_card(
        board_id: str,
        list_id: str,
        card_id: str,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        sync.get_board(user["id"], board_id)
        sync.get_list(board_id, list_id)
        return card_out(sync.get_card(list_id, card_id))

    @app.patch("/v1/boards/{board_id}/lists/{list_id}/cards/{card_id}", response_model=CardOut)
    def update_card(
        board_id: str,
        list_id: str,
        card_id: str,
        payload: CardUpdate,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
        if_match: Optional[str] = Header(default=None, alias="If-Match"),
    ):
        sync.get_board(user["id"], board_id)
        sync.get_list(board_id, list_id)
        payload = with_if_match(payload, if_match)
        return card_out(sync.update_card(list_id, card_id, payload))

    @app.delete("/v1/boards/{board_id}/lists/{list_id}/cards/{card_id}", status_code=204)
    def delete_card(
        board_id: str,
        list_id: str,
        card_id: str,
        user: dict = Depends(get_current_user),
        sync: Synchronizer = Depends(get_sync),
    ):
        sync.get_board(user["id"], board_id)
        sync.get_list(board_id, list_id)
        sync.delete_card(list_id, card_id)
        return Response(status_code=204)
