import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_serializer

from book import Book
from catalog import Author, Category
from config import settings
from database import get_db_connection
from errors import LibraryError, ValidationError
from library import Library
from loan import STATUS_LABELS as LOAN_STATUS_LABELS
from loan import Borrower, Loan
from reservation import STATUS_LABELS as RESERVATION_STATUS_LABELS
from reservation import Reservation
from utils.time_utils import utcnow

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

library = Library()

ERROR_STATUS_CODES = {
    "NotFound": 404,
    "InvalidState": 409,
    "LimitExceeded": 422,
    "ValidationError": 400,
}


async def _sweep_expired_reservations(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            expired = await asyncio.to_thread(library.expire_reservations)
        except (LibraryError, sqlite3.Error):
            logger.exception("Expiry sweep failed")
            continue
        if expired:
            logger.info(f"Expiry sweep closed {len(expired)} reservation(s)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if settings.expiry_sweep_interval > 0:
        sweeper = asyncio.create_task(_sweep_expired_reservations(settings.expiry_sweep_interval))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_response_headers(request: Request, call_next):
    response = await call_next(request)
    # Counters and queues change on every request, never let a proxy cache them
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Error handling ---
def _error_response(status_code: int, message: str, kind: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "tipo": kind})


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status_code = ERROR_STATUS_CODES.get(exc.kind, 400)
    if status_code == 409 or status_code == 422:
        logger.info(f"{request.method} {request.url.path} refused: {exc}")
    return _error_response(status_code, str(exc), exc.kind)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Requisição inválida"
    return _error_response(400, message, ValidationError.kind)


# --- Models ---
class LivroModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(serialization_alias="_id")
    titulo: str
    autor: str
    isbn: str
    categoria: str
    ano_publicacao: Optional[int] = None
    editora: Optional[str] = None
    paginas: Optional[int] = None
    sinopse: Optional[str] = None
    capa_url: Optional[str] = None
    localizacao: Optional[str] = None
    quantidade_total: int
    quantidade_disponivel: int
    disponivel: bool
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_book(cls, book: Book) -> "LivroModel":
        return cls(
            id=book.id,
            titulo=book.title,
            autor=book.author,
            isbn=book.isbn,
            categoria=book.category,
            ano_publicacao=book.publication_year,
            editora=book.publisher,
            paginas=book.pages,
            sinopse=book.synopsis,
            capa_url=book.cover_url,
            localizacao=book.location,
            quantidade_total=book.total_copies,
            quantidade_disponivel=book.available_copies,
            disponivel=book.is_available,
            createdAt=book.created_at,
            updatedAt=book.updated_at,
        )


class LivroCreateModel(BaseModel):
    titulo: str
    autor: str
    isbn: str
    categoria: str
    quantidade_total: int = 1
    quantidade_disponivel: Optional[int] = None
    ano_publicacao: Optional[int] = None
    editora: Optional[str] = None
    paginas: Optional[int] = None
    sinopse: Optional[str] = None
    capa_url: Optional[str] = None
    localizacao: Optional[str] = None


class LivroUpdateModel(BaseModel):
    titulo: Optional[str] = None
    autor: Optional[str] = None
    isbn: Optional[str] = None
    categoria: Optional[str] = None
    quantidade_total: Optional[int] = None
    ano_publicacao: Optional[int] = None
    editora: Optional[str] = None
    paginas: Optional[int] = None
    sinopse: Optional[str] = None
    capa_url: Optional[str] = None
    localizacao: Optional[str] = None


# Request field -> Library keyword for the optional book details
BOOK_DETAIL_FIELDS = {
    "ano_publicacao": "publication_year",
    "editora": "publisher",
    "paginas": "pages",
    "sinopse": "synopsis",
    "capa_url": "cover_url",
    "localizacao": "location",
}


class EmprestimoModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(serialization_alias="_id")
    livro_id: str
    usuario_nome: str
    usuario_email: str
    usuario_telefone: Optional[str] = None
    data_emprestimo: datetime
    data_devolucao_prevista: datetime
    data_devolucao_real: Optional[datetime] = None
    status: str
    multa: Decimal
    multa_acumulada: Decimal
    renovacoes: int
    observacoes: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @field_serializer("multa", "multa_acumulada")
    def serialize_money(self, value: Decimal) -> float:
        return float(value)

    @classmethod
    def from_loan(cls, loan: Loan) -> "EmprestimoModel":
        now = utcnow()
        return cls(
            id=loan.id,
            livro_id=loan.book_id,
            usuario_nome=loan.borrower.name,
            usuario_email=loan.borrower.email,
            usuario_telefone=loan.borrower.phone,
            data_emprestimo=loan.loan_date,
            data_devolucao_prevista=loan.due_date,
            data_devolucao_real=loan.return_date,
            status=LOAN_STATUS_LABELS[loan.display_status(now)],
            multa=loan.fine,
            multa_acumulada=loan.accrued_fine(now, library.loans.daily_fine),
            renovacoes=loan.renewal_count,
            observacoes=loan.notes,
            createdAt=loan.created_at,
            updatedAt=loan.updated_at,
        )


class EmprestimoCreateModel(BaseModel):
    livro_id: str
    usuario_nome: str
    usuario_email: str
    usuario_telefone: Optional[str] = None
    data_emprestimo: Optional[datetime] = None
    observacoes: Optional[str] = None


class ContatoUpdateModel(BaseModel):
    """Editable fields shared by loans and reservations."""
    usuario_nome: Optional[str] = None
    usuario_email: Optional[str] = None
    usuario_telefone: Optional[str] = None
    observacoes: Optional[str] = None

    def as_kwargs(self) -> Dict[str, Any]:
        return {
            "name": self.usuario_nome,
            "email": self.usuario_email,
            "phone": self.usuario_telefone,
            "notes": self.observacoes,
        }


class DevolucaoModel(BaseModel):
    data_devolucao_real: Optional[datetime] = None


class ReservaModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(serialization_alias="_id")
    livro_id: str
    usuario_nome: str
    usuario_email: str
    usuario_telefone: Optional[str] = None
    data_reserva: datetime
    data_expiracao: Optional[datetime] = None
    data_notificacao: Optional[datetime] = None
    status: str
    prioridade: int
    observacoes: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_reservation(cls, reservation: Reservation) -> "ReservaModel":
        return cls(
            id=reservation.id,
            livro_id=reservation.book_id,
            usuario_nome=reservation.borrower.name,
            usuario_email=reservation.borrower.email,
            usuario_telefone=reservation.borrower.phone,
            data_reserva=reservation.reservation_date,
            data_expiracao=reservation.expiration_date,
            data_notificacao=reservation.notification_date,
            status=RESERVATION_STATUS_LABELS[reservation.effective_status()],
            prioridade=reservation.priority,
            observacoes=reservation.notes,
            createdAt=reservation.created_at,
            updatedAt=reservation.updated_at,
        )


class ReservaCreateModel(BaseModel):
    livro_id: str
    usuario_nome: str
    usuario_email: str
    usuario_telefone: Optional[str] = None
    data_reserva: Optional[datetime] = None
    observacoes: Optional[str] = None


class DevolucaoResultModel(EmprestimoModel):
    reserva_notificada: Optional[ReservaModel] = None


class AtendimentoModel(BaseModel):
    emprestar: bool = False


class AtendimentoResultModel(ReservaModel):
    emprestimo: Optional[EmprestimoModel] = None


class AutorModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(serialization_alias="_id")
    nome: str
    nome_artistico: Optional[str] = None
    biografia: Optional[str] = None
    data_nascimento: Optional[datetime] = None
    data_falecimento: Optional[datetime] = None
    nacionalidade: Optional[str] = None
    generos_literarios: List[str] = []
    foto_url: Optional[str] = None
    site_oficial: Optional[str] = None
    ativo: bool = True
    total_livros: int = 0
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_author(cls, author: Author) -> "AutorModel":
        return cls(
            id=author.id,
            nome=author.name,
            nome_artistico=author.artistic_name,
            biografia=author.biography,
            data_nascimento=author.birth_date,
            data_falecimento=author.death_date,
            nacionalidade=author.nationality,
            generos_literarios=author.genres,
            foto_url=author.photo_url,
            site_oficial=author.website,
            ativo=author.active,
            total_livros=author.total_books,
            createdAt=author.created_at,
            updatedAt=author.updated_at,
        )


class AutorInputModel(BaseModel):
    nome: Optional[str] = None
    nome_artistico: Optional[str] = None
    biografia: Optional[str] = None
    data_nascimento: Optional[datetime] = None
    data_falecimento: Optional[datetime] = None
    nacionalidade: Optional[str] = None
    generos_literarios: Optional[List[str]] = None
    foto_url: Optional[str] = None
    site_oficial: Optional[str] = None
    ativo: Optional[bool] = None
    total_livros: Optional[int] = None


AUTHOR_FIELDS = {
    "nome": "name",
    "nome_artistico": "artistic_name",
    "biografia": "biography",
    "data_nascimento": "birth_date",
    "data_falecimento": "death_date",
    "nacionalidade": "nationality",
    "generos_literarios": "genres",
    "foto_url": "photo_url",
    "site_oficial": "website",
    "ativo": "active",
    "total_livros": "total_books",
}


class CategoriaModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(serialization_alias="_id")
    nome: str
    codigo: str
    descricao: Optional[str] = None
    cor: Optional[str] = None
    ativa: bool = True
    ordem: int = 1
    total_livros: int = 0
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_category(cls, category: Category) -> "CategoriaModel":
        return cls(
            id=category.id,
            nome=category.name,
            codigo=category.code,
            descricao=category.description,
            cor=category.color,
            ativa=category.active,
            ordem=category.sort_order,
            total_livros=category.total_books,
            createdAt=category.created_at,
            updatedAt=category.updated_at,
        )


class CategoriaInputModel(BaseModel):
    nome: Optional[str] = None
    codigo: Optional[str] = None
    descricao: Optional[str] = None
    cor: Optional[str] = None
    ativa: Optional[bool] = None
    ordem: Optional[int] = None
    total_livros: Optional[int] = None


CATEGORY_FIELDS = {
    "nome": "name",
    "codigo": "code",
    "descricao": "description",
    "cor": "color",
    "ativa": "active",
    "ordem": "sort_order",
    "total_livros": "total_books",
}


class DashboardModel(BaseModel):
    total_livros: int
    livros_disponiveis: int
    emprestimos_ativos: int
    emprestimos_atrasados: int
    reservas_ativas: int
    total_categorias: int
    total_autores: int


class MessageModel(BaseModel):
    message: str


# --- Helpers ---
def _sent_fields(payload: BaseModel, mapping: Dict[str, str]) -> Dict[str, Any]:
    """Translate the fields the client actually sent into Library keywords."""
    sent = payload.model_dump(exclude_unset=True)
    return {mapping[name]: value for name, value in sent.items() if name in mapping}


def _parse_status(value: Optional[str], labels: Dict[Any, str]):
    if value is None:
        return None
    for status, label in labels.items():
        if value in (label, status.value):
            return status
    allowed = ", ".join(labels.values())
    raise ValidationError(f"Status inválido: {value}. Permitidos: {allowed}")


# --- Health ---
@app.get("/health")
def health_check():
    """Health check endpoint."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except sqlite3.Error:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": utcnow().isoformat(),
        "db": db_ok,
        "environment": settings.environment,
        "version": settings.app_version,
    }


@app.get("/api/dashboard", response_model=DashboardModel)
def get_dashboard():
    """Counters for the librarian home page."""
    stats = library.get_statistics()
    return DashboardModel(
        total_livros=stats["total_books"],
        livros_disponiveis=stats["available_books"],
        emprestimos_ativos=stats["active_loans"],
        emprestimos_atrasados=stats["overdue_loans"],
        reservas_ativas=stats["active_reservations"],
        total_categorias=stats["total_categories"],
        total_autores=stats["total_authors"],
    )


# --- Books ---
@app.get("/api/livros", response_model=List[LivroModel])
def list_books(
    q: Optional[str] = Query(None, description="Busca por título, autor ou ISBN"),
    categoria: Optional[str] = Query(None),
    disponivel: Optional[bool] = Query(None),
    sort_by: str = Query("createdAt", description="titulo | autor | createdAt"),
    order: str = Query("desc", description="asc | desc"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
):
    sort_keys = {
        "titulo": lambda b: b.title.lower(),
        "autor": lambda b: b.author.lower(),
        "createdAt": lambda b: b.created_at,
    }
    if sort_by not in sort_keys:
        raise ValidationError("sort_by inválido. Permitidos: titulo, autor, createdAt")
    if order not in ("asc", "desc"):
        raise ValidationError("order inválido. Permitidos: asc, desc")

    books = library.list_books(q)
    if categoria:
        books = [b for b in books if b.category.lower() == categoria.strip().lower()]
    if disponivel is not None:
        books = [b for b in books if b.is_available == disponivel]
    books.sort(key=sort_keys[sort_by], reverse=order == "desc")
    books = books[offset:] if limit is None else books[offset:offset + limit]
    return [LivroModel.from_book(b) for b in books]


@app.get("/api/livros/{book_id}", response_model=LivroModel)
def get_book(book_id: str):
    return LivroModel.from_book(library.get_book(book_id))


@app.post("/api/livros", response_model=LivroModel, status_code=201)
def add_book(payload: LivroCreateModel):
    book = library.add_book(
        title=payload.titulo,
        author=payload.autor,
        isbn=payload.isbn,
        category=payload.categoria,
        total_copies=payload.quantidade_total,
        available_copies=payload.quantidade_disponivel,
        **_sent_fields(payload, BOOK_DETAIL_FIELDS),
    )
    return LivroModel.from_book(book)


@app.put("/api/livros/{book_id}", response_model=LivroModel)
def update_book(book_id: str, payload: LivroUpdateModel):
    book = library.update_book(
        book_id,
        title=payload.titulo,
        author=payload.autor,
        isbn=payload.isbn,
        category=payload.categoria,
        total_copies=payload.quantidade_total,
        **_sent_fields(payload, BOOK_DETAIL_FIELDS),
    )
    return LivroModel.from_book(book)


@app.delete("/api/livros/{book_id}", response_model=MessageModel)
def delete_book(book_id: str):
    library.remove_book(book_id)
    return MessageModel(message="Livro removido com sucesso")


@app.get("/api/livros/{book_id}/fila", response_model=List[ReservaModel])
def get_book_queue(book_id: str):
    """Waiting reservations for a book, in service order."""
    return [ReservaModel.from_reservation(r) for r in library.get_queue_for_book(book_id)]


# --- Authors ---
@app.get("/api/autores", response_model=List[AutorModel])
def list_authors():
    return [AutorModel.from_author(a) for a in library.list_authors()]


@app.get("/api/autores/{author_id}", response_model=AutorModel)
def get_author(author_id: str):
    return AutorModel.from_author(library.get_author(author_id))


@app.post("/api/autores", response_model=AutorModel, status_code=201)
def add_author(payload: AutorInputModel):
    return AutorModel.from_author(library.add_author(**_sent_fields(payload, AUTHOR_FIELDS)))


@app.put("/api/autores/{author_id}", response_model=AutorModel)
def update_author(author_id: str, payload: AutorInputModel):
    author = library.update_author(author_id, **_sent_fields(payload, AUTHOR_FIELDS))
    return AutorModel.from_author(author)


@app.delete("/api/autores/{author_id}", response_model=MessageModel)
def delete_author(author_id: str):
    library.remove_author(author_id)
    return MessageModel(message="Autor removido com sucesso")


# --- Categories ---
@app.get("/api/categorias", response_model=List[CategoriaModel])
def list_categories():
    return [CategoriaModel.from_category(c) for c in library.list_categories()]


@app.get("/api/categorias/{category_id}", response_model=CategoriaModel)
def get_category(category_id: str):
    return CategoriaModel.from_category(library.get_category(category_id))


@app.post("/api/categorias", response_model=CategoriaModel, status_code=201)
def add_category(payload: CategoriaInputModel):
    category = library.add_category(**_sent_fields(payload, CATEGORY_FIELDS))
    return CategoriaModel.from_category(category)


@app.put("/api/categorias/{category_id}", response_model=CategoriaModel)
def update_category(category_id: str, payload: CategoriaInputModel):
    category = library.update_category(category_id, **_sent_fields(payload, CATEGORY_FIELDS))
    return CategoriaModel.from_category(category)


@app.delete("/api/categorias/{category_id}", response_model=MessageModel)
def delete_category(category_id: str):
    library.remove_category(category_id)
    return MessageModel(message="Categoria removida com sucesso")


# --- Loans ---
@app.get("/api/emprestimos", response_model=List[EmprestimoModel])
def list_loans(
    livro_id: Optional[str] = Query(None),
    usuario_email: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="ativo | renovado | devolvido | atrasado"),
):
    loans = library.list_loans(
        book_id=livro_id,
        email=usuario_email,
        status=_parse_status(status, LOAN_STATUS_LABELS),
    )
    return [EmprestimoModel.from_loan(loan) for loan in loans]


@app.get("/api/emprestimos/{loan_id}", response_model=EmprestimoModel)
def get_loan(loan_id: str):
    return EmprestimoModel.from_loan(library.get_loan(loan_id))


@app.post("/api/emprestimos", response_model=EmprestimoModel, status_code=201)
def create_loan(payload: EmprestimoCreateModel):
    loan = library.create_loan(
        payload.livro_id,
        Borrower(payload.usuario_nome, payload.usuario_email, payload.usuario_telefone),
        loan_date=payload.data_emprestimo,
        notes=payload.observacoes,
    )
    return EmprestimoModel.from_loan(loan)


@app.put("/api/emprestimos/{loan_id}", response_model=EmprestimoModel)
def update_loan(loan_id: str, payload: ContatoUpdateModel):
    return EmprestimoModel.from_loan(library.update_loan(loan_id, **payload.as_kwargs()))


@app.delete("/api/emprestimos/{loan_id}", response_model=MessageModel)
def delete_loan(loan_id: str):
    library.delete_loan(loan_id)
    return MessageModel(message="Empréstimo removido com sucesso")


@app.post("/api/emprestimos/{loan_id}/renovar", response_model=EmprestimoModel)
def renew_loan(loan_id: str):
    return EmprestimoModel.from_loan(library.renew_loan(loan_id))


@app.post("/api/emprestimos/{loan_id}/devolver", response_model=DevolucaoResultModel)
def return_loan(loan_id: str, payload: Optional[DevolucaoModel] = None):
    return_date = payload.data_devolucao_real if payload else None
    result = library.return_loan(loan_id, return_date)
    body = EmprestimoModel.from_loan(result.loan).model_dump()
    notified = ReservaModel.from_reservation(result.notified) if result.notified else None
    return DevolucaoResultModel(**body, reserva_notificada=notified)


# --- Reservations ---
@app.get("/api/reservas", response_model=List[ReservaModel])
def list_reservations(
    livro_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="ativa | notificada | expirada | cancelada | atendida"),
):
    reservations = library.list_reservations(
        book_id=livro_id,
        status=_parse_status(status, RESERVATION_STATUS_LABELS),
    )
    return [ReservaModel.from_reservation(r) for r in reservations]


@app.get("/api/reservas/{reservation_id}", response_model=ReservaModel)
def get_reservation(reservation_id: str):
    return ReservaModel.from_reservation(library.get_reservation(reservation_id))


@app.post("/api/reservas", response_model=ReservaModel, status_code=201)
def create_reservation(payload: ReservaCreateModel):
    reservation = library.create_reservation(
        payload.livro_id,
        Borrower(payload.usuario_nome, payload.usuario_email, payload.usuario_telefone),
        reservation_date=payload.data_reserva,
        notes=payload.observacoes,
    )
    return ReservaModel.from_reservation(reservation)


@app.put("/api/reservas/{reservation_id}", response_model=ReservaModel)
def update_reservation(reservation_id: str, payload: ContatoUpdateModel):
    reservation = library.update_reservation(reservation_id, **payload.as_kwargs())
    return ReservaModel.from_reservation(reservation)


@app.delete("/api/reservas/{reservation_id}", response_model=MessageModel)
def delete_reservation(reservation_id: str):
    library.delete_reservation(reservation_id)
    return MessageModel(message="Reserva removida com sucesso")


@app.post("/api/reservas/{reservation_id}/notificar", response_model=ReservaModel)
def notify_reservation(reservation_id: str):
    return ReservaModel.from_reservation(library.notify_reservation(reservation_id))


@app.post("/api/reservas/{reservation_id}/atender", response_model=AtendimentoResultModel)
def fulfill_reservation(reservation_id: str, payload: Optional[AtendimentoModel] = None):
    checkout = payload.emprestar if payload else False
    result = library.fulfill_reservation(reservation_id, checkout=checkout)
    body = ReservaModel.from_reservation(result.reservation).model_dump()
    loan = EmprestimoModel.from_loan(result.loan) if result.loan else None
    return AtendimentoResultModel(**body, emprestimo=loan)


@app.post("/api/reservas/{reservation_id}/cancelar", response_model=ReservaModel)
def cancel_reservation(reservation_id: str):
    return ReservaModel.from_reservation(library.cancel_reservation(reservation_id))
