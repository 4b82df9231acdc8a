# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#
# [CARTEIRA]
#
# This module holds the back office rules for a portfolio of discounted titles: duplicatas, cheques and installment
# plans ("parcelamentos"). It began life as a set of handlers glued to a web front end. Those handlers kept the client,
# operation and receipt collections in global state and mutated them from wherever it was convenient. The rewrite
# concentrates all of that in the "Portfolio" class, and leaves the arithmetic to plain functions.
#
# The module operates in three layers:
#
#   1. Pure calculations. Net value, remaining balances, installment splitting, status derivation and the portfolio
#      snapshot. None of these touch a store, and all of them can be called on any list of operations and receipts.
#
#   2. A storage backend. The "StorageBackend" class is the contract with whatever persists the collections. An
#      in-memory implementation is provided, good for tests and for the command line interface.
#
#   3. The "Portfolio" service. It owns the in-memory view, talks to the backend, and sequences the writes of the
#      receipt reconciliation.
#
# [OVERDUE STATUS]
#
# An operation whose due date has passed is shown as "atrasado", but this is never written to the store. The stored
# status stays "aberto", and every read goes through "derive_status". Store and view are trivially consistent this
# way, at the cost of recomputing on each read. If some day a second client needs to see overdue operations directly
# from the database, a reconciliation pass will have to be written.
#
# [WEAKNESSES]
#
#   • The remaining principal of an operation is computed against its net value, not its nominal value. Thus the
#     net value is used both as the amount due and as the principal base, and the interest markup is counted again
#     in the remaining interest. Dashboards have relied on these numbers for a long time, so they were kept.
#
#   • Overpayment is tolerated. A receipt that pays more principal than is owed just clamps the remainder at zero.
#
#   • Locks serialize reconciliations per operation inside a single process only.
#

'''
Carteira, a receivables portfolio core.

Tracks clients, operations (discounted titles) and receipts, and derives the portfolio health metrics: active capital,
interest receivable, and delinquency.

The main entry point is the "Portfolio" class, which wraps a storage backend.

  >>> portfolio = Portfolio(InMemoryBackend(), today=datetime.date(2024, 7, 10))
  >>> portfolio.load()

The calculation functions, "compute_net_value", "remaining_balances", "expand_installments" and
"get_portfolio_snapshot", are pure and may be used without a portfolio.
'''

# Python.
import typing as t
import decimal
import logging
import datetime
import zoneinfo
import functools
import threading
import contextlib
import dataclasses
import collections
import importlib.metadata

# Libs.
import typeguard
import dateutil.relativedelta

# Carteira version.
__version__ = importlib.metadata.version('carteira') if 'carteira' in importlib.metadata.packages_distributions() else 'DEV'

# Logger object.
_LOG = logging.getLogger('carteira')

# Zero as decimal.
_0 = decimal.Decimal()

# One hundred as decimal.
_100 = decimal.Decimal(100)

# Centi factor.
_CENTI = decimal.Decimal('0.01')

# Centesimal quantization.
_Q = functools.partial(decimal.Decimal.quantize, exp=_CENTI, rounding=decimal.ROUND_HALF_UP)

# A month.
_MONTH = dateutil.relativedelta.relativedelta(months=1)

# GMT-3.
_BRT = zoneinfo.ZoneInfo('America/Sao_Paulo')

# Today in Brazilian Regional Time (BRT).
_TODAY: t.Callable[[], datetime.date] = lambda: datetime.datetime.now(_BRT).date()

# Operation types.
_OPERATION_TYPE = t.Literal['duplicata', 'cheque', 'parcelamento']

# Operation states.
_OPERATION_STATUS = t.Literal['aberto', 'pago', 'atrasado']

# What causes a status change.
_TRIGGER = t.Literal['overdue', 'settlement', 'manual', 'extension', 'reversal']

# Due date categories, for the upcoming list.
_DUE_CATEGORY = t.Literal['overdue', 'today', 'week', 'upcoming']

# Store tables.
_TABLE = t.Literal['users', 'clients', 'operations', 'receipts']

# Reminders look this many days ahead.
REMINDER_WINDOW_DAYS = 7

# Size of the upcoming due dates list.
UPCOMING_LIMIT = 5

# Installment count bounds for plan expansion.
MIN_INSTALLMENTS = 2
MAX_INSTALLMENTS = 60

# Name shown for operations without a client.
UNKNOWN_CLIENT = 'Cliente Desconhecido'

# Permitted status transitions, per trigger.
_TRANSITIONS: t.Dict[str, t.FrozenSet[t.Tuple[str, str]]] = {
    'overdue': frozenset({('aberto', 'atrasado')}),
    'settlement': frozenset({('aberto', 'pago'), ('atrasado', 'pago')}),
    'manual': frozenset({('aberto', 'pago'), ('atrasado', 'pago')}),
    'extension': frozenset({('pago', 'aberto'), ('atrasado', 'aberto')}),
    'reversal': frozenset({('pago', 'aberto'), ('pago', 'atrasado')}),
}

# Helpers. {{{
@typeguard.typechecked
def to_money(value: t.Union[decimal.Decimal, int, str]) -> decimal.Decimal:
    '''
    Converts a value to a monetary amount, rounded to cents.

    >>> to_money('1234.567')
    Decimal('1234.57')
    >>> to_money(10)
    Decimal('10.00')
    >>> to_money('R$ 10')  # doctest: +IGNORE_EXCEPTION_DETAIL
    Traceback (most recent call last):
        ...
    carteira.ValidationError: invalid monetary value "R$ 10"
    '''

    try:
        val = decimal.Decimal(value)

    except decimal.InvalidOperation as exc:
        raise ValidationError(f'invalid monetary value "{value}"') from exc

    if not val.is_finite():
        raise ValidationError(f'invalid monetary value "{value}"')

    return _Q(val)

@typeguard.typechecked
def split_value(total: decimal.Decimal, count: int) -> t.List[decimal.Decimal]:
    '''
    Splits a total in COUNT parts, rounded to cents, without losing a cent.

    All parts get the rounded quotient, except the last one, which absorbs the residual.

    >>> split_value(decimal.Decimal('100'), 3)
    [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]
    >>> split_value(decimal.Decimal('0.59'), 2)
    [Decimal('0.30'), Decimal('0.29')]
    >>> sum(split_value(decimal.Decimal('1000.01'), 7))
    Decimal('1000.01')
    '''

    if count < 1:
        raise ValueError(f'"count" must be a greater than, or equal to, one, got {count}')

    per = _Q(total / count)
    out = [per] * count

    out[-1] = per + _Q(total - per * count)

    return out

def _principal_paid(operation_id: int, receipts: t.Iterable['Receipt']) -> decimal.Decimal:
    return sum((x.valor_principal_pago for x in receipts if x.operation_id == operation_id), _0)

def _interest_paid(operation_id: int, receipts: t.Iterable['Receipt']) -> decimal.Decimal:
    return sum((x.valor_juros_pago for x in receipts if x.operation_id == operation_id), _0)
# }}}

# Public API. Errors. {{{
class CarteiraError(Exception):
    pass

class ValidationError(CarteiraError, ValueError):
    '''Malformed or missing input. Always raised before anything is written.'''

class BusinessRuleViolation(CarteiraError, ValueError):
    '''A well formed request that the business rules forbid.'''

class NotFoundError(CarteiraError, LookupError):
    pass

class StoreError(CarteiraError):
    '''The store rejected a read or a write.'''

class BackendError(StoreError):
    pass
# }}}

# Public API. Main classes. {{{
@dataclasses.dataclass
class User:
    id: int = 0

    nome: str = ''

    email: str = ''

    papel: str = 'Operador'

    password: str = ''

@dataclasses.dataclass
class UserDraft:
    nome: str

    email: str

    password: str

    papel: str = 'Operador'

@dataclasses.dataclass
class Client:
    '''
    A client of the business.

    Holds a credit limit, "limite_credito", and a default monthly interest rate, in percent, "taxa_juros_mensal". New
    operations for the client inherit this rate, unless told otherwise.
    '''

    id: int = 0

    nome: str = ''

    cpf_cnpj: str = ''

    email: str = ''

    telefone: str = ''

    endereco: str = ''

    limite_credito: decimal.Decimal = _0

    taxa_juros_mensal: decimal.Decimal = _0

    data_cadastro: datetime.date = datetime.date.min

@dataclasses.dataclass
class ClientDraft:
    nome: str

    cpf_cnpj: str = ''

    email: str = ''

    telefone: str = ''

    endereco: str = ''

    limite_credito: decimal.Decimal = _0

    taxa_juros_mensal: decimal.Decimal = _0

@dataclasses.dataclass
class Operation:
    '''
    A discounted title, money owed by a client.

      • "client_id", the owning client. Zero means no client.

      • "client_name", derived from the client collection. Never stored.

      • "type", one of "duplicata", "cheque" or "parcelamento".

      • "title_number", the title identification. Installments are numbered "<base>-<i>/<n>".

      • "nominal_value", the face value, or principal.

      • "net_value", nominal value plus the interest markup. Fixed at creation.

      • "taxa", the monthly interest rate, in percent, used at creation.

      • "status", one of "aberto", "pago" or "atrasado".
    '''

    id: int = 0

    client_id: int = 0

    client_name: str = UNKNOWN_CLIENT

    type: _OPERATION_TYPE = 'duplicata'

    title_number: str = ''

    nominal_value: decimal.Decimal = _0

    net_value: decimal.Decimal = _0

    issue_date: datetime.date = datetime.date.min

    due_date: datetime.date = datetime.date.min

    taxa: decimal.Decimal = _0

    status: _OPERATION_STATUS = 'aberto'

    observacoes: str = ''

    @property
    def interest(self) -> decimal.Decimal:
        return self.net_value - self.nominal_value

    @property
    def active(self) -> bool:
        return self.status in ('aberto', 'atrasado')

@dataclasses.dataclass
class OperationDraft:
    '''
    A request for a new operation.

    When "taxa" is omitted, the client's monthly rate is used. A "parcelamento" with more than one installment is
    expanded into one operation per installment, and "due_date" is the due date of the first one.
    '''

    type: _OPERATION_TYPE

    title_number: str

    nominal_value: decimal.Decimal

    issue_date: datetime.date

    due_date: datetime.date

    taxa: t.Optional[decimal.Decimal] = None

    client_id: int = 0

    installments: int = 1

    observacoes: str = ''

@dataclasses.dataclass
class Receipt:
    '''
    A payment against an operation.

    Principal, "valor_principal_pago", and interest, "valor_juros_pago", are tracked independently. Their sum does not
    have to match "valor_total_recebido".
    '''

    id: int = 0

    operation_id: int = 0

    data_recebimento: datetime.date = datetime.date.min

    valor_total_recebido: decimal.Decimal = _0

    valor_principal_pago: decimal.Decimal = _0

    valor_juros_pago: decimal.Decimal = _0

    forma_pagamento: str = ''

    observacoes: str = ''

@dataclasses.dataclass
class ReceiptDraft:
    '''
    A request for a new receipt.

    A draft with "new_due_date" is a due date extension ("prorrogação"), not a settlement. The new date replaces the
    operation's due date, and the receipt's principal never counts towards closing the operation at that moment.
    '''

    operation_id: int

    data_recebimento: datetime.date

    valor_total_recebido: decimal.Decimal = _0

    valor_principal_pago: decimal.Decimal = _0

    valor_juros_pago: decimal.Decimal = _0

    forma_pagamento: str = ''

    observacoes: str = ''

    new_due_date: t.Optional[datetime.date] = None

@dataclasses.dataclass(frozen=True)
class Balance:
    remaining_principal: decimal.Decimal = _0

    remaining_interest: decimal.Decimal = _0

    @property
    def current_debt(self) -> decimal.Decimal:
        return self.remaining_principal + self.remaining_interest

@dataclasses.dataclass(frozen=True)
class CreditInfo:
    limit: decimal.Decimal = _0

    exposure: decimal.Decimal = _0

    @property
    def remaining(self) -> decimal.Decimal:
        return self.limit - self.exposure

@dataclasses.dataclass(frozen=True)
class Reminder:
    id: int

    operation_id: int

    client_name: str

    due_date: datetime.date

    nominal_value: decimal.Decimal

@dataclasses.dataclass(frozen=True)
class DueItem:
    '''An active operation on the upcoming due dates list, its category, and the days left (negative if overdue).'''

    operation: Operation

    category: _DUE_CATEGORY

    days: int

@dataclasses.dataclass(frozen=True)
class InstallmentStats:
    active_value: decimal.Decimal = _0

    active_count: int = 0

    total_count: int = 0

@dataclasses.dataclass(frozen=True)
class PortfolioSnapshot:
    '''
    Portfolio health metrics. Derived on demand, never stored.

      • "active_capital", remaining principal of the active operations.

      • "interest_to_receive", remaining interest of the active operations.

      • "total_receivables", the sum of both.

      • "delinquency_value", remaining debt of the overdue operations only.

      • "status_distribution", operation count per status.

      • "installments", figures for "parcelamento" operations.

      • "upcoming", the next due dates among active operations.
    '''

    active_capital: decimal.Decimal = _0

    interest_to_receive: decimal.Decimal = _0

    total_receivables: decimal.Decimal = _0

    delinquency_value: decimal.Decimal = _0

    status_distribution: t.Dict[str, int] = dataclasses.field(default_factory=dict)

    installments: InstallmentStats = dataclasses.field(default_factory=InstallmentStats)

    upcoming: t.Tuple[DueItem, ...] = ()
# }}}

# Public API. Accrual calculator. {{{
@typeguard.typechecked
def compute_net_value(nominal: decimal.Decimal, rate: t.Optional[decimal.Decimal] = None) -> decimal.Decimal:
    '''
    Calculates the net value of a title, given its nominal value and a monthly rate in percent.

    >>> compute_net_value(decimal.Decimal('1000'), decimal.Decimal('5'))
    Decimal('1050.00')
    >>> compute_net_value(decimal.Decimal('1000'), decimal.Decimal('0'))
    Decimal('1000.00')
    >>> compute_net_value(decimal.Decimal('333.33'))
    Decimal('333.33')
    '''

    if rate:
        return _Q(nominal + nominal * rate / _100)

    return _Q(nominal)

@typeguard.typechecked
def remaining_balances(operation: Operation, receipts: t.Iterable[Receipt]) -> Balance:
    '''
    Calculates what is left to receive from an operation.

    The principal paid is subtracted from the net value, and the interest paid from the interest markup. Both
    remainders are floored at zero, so overpayment never produces a negative balance. Receipts of other operations are
    ignored.
    '''

    receipts = tuple(receipts)
    principal = operation.net_value - _principal_paid(operation.id, receipts)
    interest = operation.interest - _interest_paid(operation.id, receipts)

    return Balance(remaining_principal=max(_0, principal), remaining_interest=max(_0, interest))
# }}}

# Public API. Installment expander. {{{
@typeguard.typechecked
def expand_installments(
    nominal_value: decimal.Decimal,
    count: int,
    base_title: str,
    issue_date: datetime.date,
    due_date: datetime.date,
    rate: t.Optional[decimal.Decimal] = None
) -> t.List[Operation]:
    '''
    Expands an installment plan into one unsaved operation per installment.

      • "nominal_value" is split with "split_value", so the installments add up to it exactly.

      • "due_date" is the due date of the first installment. Each subsequent one is due a calendar month later. Day
        overflow is clamped to the end of the month, thus January 31 is followed by the last day of February.

      • "base_title" is suffixed with the installment number and the count.

    Each installment carries its own net value, calculated from its share of the nominal value.

    >>> ops = expand_installments(decimal.Decimal('100'), 3, 'NF-7', datetime.date(2024, 1, 1), datetime.date(2024, 1, 31))
    >>> [(x.title_number, x.due_date.isoformat(), str(x.nominal_value)) for x in ops]  # doctest: +NORMALIZE_WHITESPACE
    [('NF-7-1/3', '2024-01-31', '33.33'),
     ('NF-7-2/3', '2024-02-29', '33.33'),
     ('NF-7-3/3', '2024-03-31', '33.34')]
    '''

    if not MIN_INSTALLMENTS <= count <= MAX_INSTALLMENTS:
        raise BusinessRuleViolation(f'the installment count must be between {MIN_INSTALLMENTS} and {MAX_INSTALLMENTS}, got {count}')

    if not nominal_value.is_finite() or nominal_value < 0:
        raise ValidationError(f'"nominal_value" must be a non negative amount, got {nominal_value}')

    if (parts := split_value(nominal_value, count))[-1] < 0:
        raise BusinessRuleViolation(f'{nominal_value} is too small to be split in {count} installments')

    out = []

    for i, value in enumerate(parts):
        ent = Operation(type='parcelamento')

        ent.title_number = f'{base_title}-{i + 1}/{count}'
        ent.nominal_value = value
        ent.net_value = compute_net_value(value, rate)
        ent.issue_date = issue_date
        ent.due_date = due_date + _MONTH * i
        ent.taxa = rate or _0

        out.append(ent)

    _LOG.debug(f'expanded "{base_title}" into {count} installments of {out[0].nominal_value}, last of {out[-1].nominal_value}')

    return out
# }}}

# Public API. Status machine. {{{
@typeguard.typechecked
def is_overdue(due_date: datetime.date, today: t.Optional[datetime.date] = None) -> bool:
    '''
    Tells if a due date has passed. The due day itself is not overdue.

    >>> is_overdue(datetime.date(2024, 7, 9), datetime.date(2024, 7, 10))
    True
    >>> is_overdue(datetime.date(2024, 7, 10), datetime.date(2024, 7, 10))
    False
    '''

    return due_date < (today or _TODAY())

@typeguard.typechecked
def derive_status(operation: Operation, today: t.Optional[datetime.date] = None) -> _OPERATION_STATUS:
    '''Returns the status to display, which is "atrasado" for an open operation past its due date.'''

    if operation.status == 'aberto' and is_overdue(operation.due_date, today):
        return 'atrasado'

    return operation.status

@typeguard.typechecked
def can_transition(current: _OPERATION_STATUS, target: _OPERATION_STATUS, trigger: _TRIGGER) -> bool:
    '''
    Tells if a status change is permitted for a given trigger.

    Changing to the current status, or any change not listed for the trigger, is a no-op.

    >>> can_transition('aberto', 'pago', 'settlement')
    True
    >>> can_transition('pago', 'aberto', 'settlement')
    False
    >>> can_transition('atrasado', 'atrasado', 'overdue')
    False
    '''

    if current == target:
        _LOG.debug(f'ignoring "{trigger}" transition, status is already "{current}"')

        return False

    if (current, target) not in _TRANSITIONS[trigger]:
        _LOG.debug(f'rejecting "{trigger}" transition from "{current}" to "{target}"')

        return False

    return True

@typeguard.typechecked
def is_settled(operation: Operation, receipts: t.Iterable[Receipt]) -> bool:
    '''Whether the principal paid reaches the nominal value. Interest is not taken into account.'''

    return _principal_paid(operation.id, receipts) >= operation.nominal_value

@typeguard.typechecked
def reversal_status(operation: Operation, receipts: t.Iterable[Receipt], today: t.Optional[datetime.date] = None) -> _OPERATION_STATUS:
    '''
    The status of a paid operation after one of its receipts is gone.

    Stays "pago" if the remaining receipts still settle the operation. Otherwise, it is "atrasado" if the due date has
    passed, or "aberto".
    '''

    if is_settled(operation, receipts):
        return 'pago'

    return 'atrasado' if is_overdue(operation.due_date, today) else 'aberto'
# }}}

# Public API. Portfolio aggregator. {{{
@typeguard.typechecked
def categorize_due(due_date: datetime.date, today: t.Optional[datetime.date] = None) -> t.Tuple[_DUE_CATEGORY, int]:
    '''
    Categorizes a due date relative to today, and returns the difference in days.

    Weeks start on Monday. The "week" category holds dates after today, up to the end of the current week.

    >>> today = datetime.date(2024, 7, 10)  # A Wednesday.
    >>> categorize_due(datetime.date(2024, 7, 9), today)
    ('overdue', -1)
    >>> categorize_due(datetime.date(2024, 7, 10), today)
    ('today', 0)
    >>> categorize_due(datetime.date(2024, 7, 14), today)
    ('week', 4)
    >>> categorize_due(datetime.date(2024, 7, 15), today)
    ('upcoming', 5)
    '''

    today = today or _TODAY()
    days = (due_date - today).days

    if days < 0:
        return 'overdue', days

    elif days == 0:
        return 'today', days

    elif due_date - datetime.timedelta(days=due_date.weekday()) == today - datetime.timedelta(days=today.weekday()):
        return 'week', days

    else:
        return 'upcoming', days

@typeguard.typechecked
def get_portfolio_snapshot(
    operations: t.Iterable[Operation],
    receipts: t.Iterable[Receipt],
    today: t.Optional[datetime.date] = None
) -> PortfolioSnapshot:
    '''
    Calculates the portfolio health metrics.

    Only active operations, "aberto" or "atrasado", contribute to the monetary figures. Overdue status is derived
    before anything else, so an open operation past its due date counts as delinquent even if the store still says
    "aberto".

    The inputs are read once and never modified. Calling this function twice on the same data yields equal snapshots.
    '''

    today = today or _TODAY()
    ops = tuple(dataclasses.replace(x, status=derive_status(x, today)) for x in operations)
    pay = collections.defaultdict(list)

    for x in receipts:
        pay[x.operation_id].append(x)

    capital = interest = delinquency = _0
    active = [x for x in ops if x.active]

    for op in active:
        bal = remaining_balances(op, pay[op.id])

        capital += bal.remaining_principal
        interest += bal.remaining_interest

        if op.status == 'atrasado':
            delinquency += bal.current_debt

    cnt = collections.Counter(x.status for x in ops)
    inst = [x for x in ops if x.type == 'parcelamento']
    inst_active = [x for x in inst if x.active]
    upcoming = []

    for op in sorted(active, key=lambda x: x.due_date)[:UPCOMING_LIMIT]:
        category, days = categorize_due(op.due_date, today)

        upcoming.append(DueItem(operation=op, category=category, days=days))

    return PortfolioSnapshot(
        active_capital=capital,
        interest_to_receive=interest,
        total_receivables=capital + interest,
        delinquency_value=delinquency,
        status_distribution={x: cnt[x] for x in t.get_args(_OPERATION_STATUS)},
        installments=InstallmentStats(
            active_value=sum((x.nominal_value for x in inst_active), _0),
            active_count=len(inst_active),
            total_count=len(inst)
        ),
        upcoming=tuple(upcoming)
    )

@typeguard.typechecked
def get_reminders(
    operations: t.Iterable[Operation],
    dismissed: t.Iterable[int] = (),
    today: t.Optional[datetime.date] = None,
    window: int = REMINDER_WINDOW_DAYS
) -> t.List[Reminder]:
    '''
    Lists active operations due between today and WINDOW days ahead, both inclusive, sorted by due date.

    Operations whose ids are in DISMISSED are left out.
    '''

    today = today or _TODAY()
    skip = set(dismissed)
    out = []

    for op in operations:
        if op.id in skip or derive_status(op, today) not in ('aberto', 'atrasado'):
            continue

        if 0 <= (op.due_date - today).days <= window:
            out.append(Reminder(id=op.id, operation_id=op.id, client_name=op.client_name, due_date=op.due_date, nominal_value=op.nominal_value))

    return sorted(out, key=lambda x: x.due_date)
# }}}

# Public API. Storage backend classes. {{{
def _decimal(value: t.Any) -> decimal.Decimal:
    return decimal.Decimal(str(value)) if value is not None else _0

def _date(value: t.Any) -> datetime.date:
    if isinstance(value, datetime.date):
        return value

    return datetime.date.fromisoformat(value[:10])  # Timestamps are truncated to their date.

# Field codecs, (to the store, from the store).
_ID = (int, int)
_TEXT = (str, lambda v: v or '')
_DECIMAL = (str, _decimal)
_DATE = (datetime.date.isoformat, _date)
_REF = (lambda v: v or None, lambda v: v or 0)

# Entity to store mapping. This is the only place where store columns are named.
_SCHEMA: t.Dict[type, t.Tuple[str, t.Dict[str, t.Tuple[t.Callable[[t.Any], t.Any], t.Callable[[t.Any], t.Any]]]]] = {
    User: ('users', {
        'id': _ID, 'nome': _TEXT, 'email': _TEXT, 'papel': _TEXT, 'password': _TEXT
    }),
    Client: ('clients', {
        'id': _ID, 'nome': _TEXT, 'cpf_cnpj': _TEXT, 'email': _TEXT, 'telefone': _TEXT, 'endereco': _TEXT,
        'limite_credito': _DECIMAL, 'taxa_juros_mensal': _DECIMAL, 'data_cadastro': _DATE
    }),
    Operation: ('operations', {
        'id': _ID, 'client_id': _REF, 'type': _TEXT, 'title_number': _TEXT, 'nominal_value': _DECIMAL,
        'net_value': _DECIMAL, 'issue_date': _DATE, 'due_date': _DATE, 'taxa': _DECIMAL, 'status': _TEXT,
        'observacoes': _TEXT
    }),
    Receipt: ('receipts', {
        'id': _ID, 'operation_id': _ID, 'data_recebimento': _DATE, 'valor_total_recebido': _DECIMAL,
        'valor_principal_pago': _DECIMAL, 'valor_juros_pago': _DECIMAL, 'forma_pagamento': _TEXT,
        'observacoes': _TEXT
    }),
}

_E = t.TypeVar('_E', User, Client, Operation, Receipt)

def to_record(entity: t.Union[User, Client, Operation, Receipt], exclude: t.Collection[str] = ()) -> t.Dict[str, t.Any]:
    '''
    Converts an entity to a store row: a flat dictionary with ISO dates, and decimals as strings.

    >>> to_record(Receipt(id=3, operation_id=1, data_recebimento=datetime.date(2024, 7, 1), valor_principal_pago=decimal.Decimal('10.50')), exclude=['id'])  # doctest: +NORMALIZE_WHITESPACE
    {'operation_id': 1, 'data_recebimento': '2024-07-01', 'valor_total_recebido': '0', 'valor_principal_pago': '10.50',
     'valor_juros_pago': '0', 'forma_pagamento': '', 'observacoes': ''}
    '''

    _, fields = _SCHEMA[type(entity)]

    return {k: enc(getattr(entity, k)) for k, (enc, _) in fields.items() if k not in exclude}

def from_record(cls: t.Type[_E], row: t.Mapping[str, t.Any]) -> _E:
    '''Converts a store row to an entity. Columns absent from the row take the entity's defaults.'''

    table, fields = _SCHEMA[cls]

    try:
        return cls(**{k: dec(row[k]) for k, (_, dec) in fields.items() if k in row})

    except (TypeError, ValueError, decimal.InvalidOperation) as exc:
        raise StoreError(f'malformed row in "{table}", {dict(row)}: {exc}') from exc

class StorageBackend:
    '''
    The contract with the store.

    Rows are flat dictionaries, see "to_record". Implementations must honor these rules.

      • Inserting a batch is all or nothing.

      • Deleting a client deletes its operations, and deleting an operation deletes its receipts.

      • Failures raise "BackendError", or "NotFoundError" when an id doesn't exist.
    '''

    def select(self, table: _TABLE, **where: t.Any) -> t.List[t.Dict[str, t.Any]]:
        '''Returns the rows of a table, ordered by id, whose columns equal the WHERE arguments.'''

        raise NotImplementedError()

    def insert(self, table: _TABLE, rows: t.List[t.Dict[str, t.Any]]) -> t.List[t.Dict[str, t.Any]]:
        '''Inserts rows, and returns them with their generated ids.'''

        raise NotImplementedError()

    def update(self, table: _TABLE, id: int, fields: t.Dict[str, t.Any]) -> None:
        raise NotImplementedError()

    def delete(self, table: _TABLE, id: int) -> None:
        raise NotImplementedError()

    def get_dismissed_reminders(self) -> t.Set[int]:
        '''Returns the operation ids whose reminders the user dismissed.'''

        raise NotImplementedError()

    def set_dismissed_reminders(self, ids: t.Iterable[int]) -> None:
        raise NotImplementedError()

class InMemoryBackend(StorageBackend):
    '''
    A backend that keeps every table in primary memory.

    Ids are sequential per table, starting at one. Foreign keys are checked on insert, as a relational store would do.
    Every call holds a single lock, so the backend may be shared by threads. Nothing survives the process, so this
    backend isn't suited for production purposes.
    '''

    # Child table and referencing column, for cascading deletes.
    _CASCADE = {'clients': ('operations', 'client_id'), 'operations': ('receipts', 'operation_id')}

    # Referencing column and parent table.
    _FOREIGN = {'operations': ('client_id', 'clients'), 'receipts': ('operation_id', 'operations')}

    def __init__(self) -> None:
        self._tables: t.Dict[str, t.Dict[int, t.Dict[str, t.Any]]] = {x: {} for x in t.get_args(_TABLE)}
        self._serial: t.Counter[str] = collections.Counter()
        self._dismissed: t.Set[int] = set()
        self._lock = threading.RLock()

    def _table(self, table: str) -> t.Dict[int, t.Dict[str, t.Any]]:
        if table not in self._tables:
            raise BackendError(f'unknown table "{table}"')

        return self._tables[table]

    def select(self, table: _TABLE, **where: t.Any) -> t.List[t.Dict[str, t.Any]]:
        with self._lock:
            rows = self._table(table)

            return [dict(x) for _, x in sorted(rows.items()) if all(x.get(k) == v for k, v in where.items())]

    def insert(self, table: _TABLE, rows: t.List[t.Dict[str, t.Any]]) -> t.List[t.Dict[str, t.Any]]:
        with self._lock:
            dst = self._table(table)

            # Checks everything first, the batch is all or nothing.
            for i, row in enumerate(rows):
                if 'id' in row:
                    raise BackendError(f'row #{i} for "{table}" should not have an id')

                if table in self._FOREIGN:
                    col, parent = self._FOREIGN[table]

                    if row.get(col) is not None and row[col] not in self._tables[parent]:
                        raise BackendError(f'row #{i} for "{table}" violates the foreign key "{col}", there is no {parent} #{row[col]}')

            out = []

            for row in rows:
                self._serial[table] += 1

                dst[self._serial[table]] = new = dict(row, id=self._serial[table])

                out.append(dict(new))

            return out

    def update(self, table: _TABLE, id: int, fields: t.Dict[str, t.Any]) -> None:
        with self._lock:
            dst = self._table(table)

            if id not in dst:
                raise NotFoundError(f'{table} #{id} not found')

            if 'id' in fields:
                raise BackendError('the "id" column cannot be updated')

            dst[id].update(fields)

    def delete(self, table: _TABLE, id: int) -> None:
        with self._lock:
            dst = self._table(table)

            if id not in dst:
                raise NotFoundError(f'{table} #{id} not found')

            del dst[id]

            if table in self._CASCADE:
                child, col = self._CASCADE[table]

                for x in [k for k, v in self._tables[child].items() if v.get(col) == id]:
                    self.delete(child, x)

    def get_dismissed_reminders(self) -> t.Set[int]:
        with self._lock:
            return set(self._dismissed)

    def set_dismissed_reminders(self, ids: t.Iterable[int]) -> None:
        with self._lock:
            self._dismissed = set(ids)
# }}}

# Public API. Portfolio service. {{{
class Portfolio:
    '''
    The portfolio service. Owns the in-memory view of users, clients, operations and receipts.

    Every write goes to the backend first. The in-memory view changes only after the backend acknowledges it, so a
    failed write leaves the view as it was. Backend failures are raised as "StoreError", with a message naming the
    attempted action.

    Receipts drive the operation status. See "create_receipt" and "delete_receipt". Both are serialized per
    operation: the receipt write and the status write happen in sequence, under a lock held for that operation only.

    The collections of the view are never changed in place. Each change builds a new list under a single view lock,
    so readers always iterate over a consistent list.

    Pass "today" to freeze the calendar, which is useful in tests. Otherwise, the current date in Brazilian Regional
    Time is used on every call.
    '''

    def __init__(self, backend: StorageBackend, today: t.Optional[datetime.date] = None) -> None:
        self._backend = backend
        self._today = today
        self._users: t.List[User] = []
        self._clients: t.List[Client] = []
        self._operations: t.List[Operation] = []
        self._receipts: t.List[Receipt] = []
        self._dismissed: t.Set[int] = set()
        self._current_user: t.Optional[User] = None
        self._locks: t.DefaultDict[int, threading.Lock] = collections.defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        self._view_lock = threading.RLock()

    # Helpers. {{{
    @contextlib.contextmanager
    def _store(self, action: str) -> t.Iterator[None]:
        try:
            yield

        except StoreError as exc:
            _LOG.error(f'error {action}: {exc}')

            raise StoreError(f'error {action}: {exc}') from exc

    @contextlib.contextmanager
    def _serialized(self, operation_id: int) -> t.Iterator[None]:
        with self._locks_guard:
            lock = self._locks[operation_id]

        with lock:
            yield

    def _find_client(self, client_id: int) -> Client:
        if (ent := next((x for x in self._clients if x.id == client_id), None)) is None:
            raise NotFoundError(f'client #{client_id} not found')

        return ent

    def _find_operation(self, operation_id: int) -> Operation:
        if (ent := next((x for x in self._operations if x.id == operation_id), None)) is None:
            raise NotFoundError(f'operation #{operation_id} not found')

        return ent

    def _find_receipt(self, receipt_id: int) -> Receipt:
        if (ent := next((x for x in self._receipts if x.id == receipt_id), None)) is None:
            raise NotFoundError(f'receipt #{receipt_id} not found')

        return ent

    def _forget_operations(self, ids: t.Collection[int]) -> None:
        with self._view_lock:
            self._receipts = [x for x in self._receipts if x.operation_id not in ids]
            self._operations = [x for x in self._operations if x.id not in ids]

        with self._locks_guard:
            for x in ids:
                self._locks.pop(x, None)

    def _apply_status(self, operation: Operation, target: _OPERATION_STATUS, trigger: _TRIGGER) -> bool:
        current = derive_status(operation, self.today)

        if not can_transition(current, target, trigger):
            return False

        with self._store(f'updating the status of operation #{operation.id}'):
            self._backend.update('operations', operation.id, {'status': target})

        operation.status = target

        _LOG.info(f'operation #{operation.id} went from "{current}" to "{target}" ({trigger})')

        return True

    @staticmethod
    def _check_amounts(draft: t.Any, *names: str) -> None:
        for x in names:
            val = getattr(draft, x)

            if not isinstance(val, decimal.Decimal) or not val.is_finite() or val < 0:
                raise ValidationError(f'"{x}" must be a non negative decimal amount, got {val!r}')
    # }}}

    @property
    def today(self) -> datetime.date:
        return self._today or _TODAY()

    @property
    def current_user(self) -> t.Optional[User]:
        return self._current_user

    @property
    def users(self) -> t.Tuple[User, ...]:
        return tuple(self._users)

    @property
    def clients(self) -> t.Tuple[Client, ...]:
        return tuple(self._clients)

    @property
    def operations(self) -> t.Tuple[Operation, ...]:
        '''The operations, newest first, with overdue status derived.'''

        return tuple(dataclasses.replace(x, status=derive_status(x, self.today)) for x in self._operations)

    @property
    def receipts(self) -> t.Tuple[Receipt, ...]:
        return tuple(self._receipts)

    def load(self) -> None:
        '''
        Reads every collection from the backend.

        On failure, the previous view is kept, and a "StoreError" is raised.
        '''

        with self._store('loading the portfolio'):
            users = [from_record(User, x) for x in self._backend.select('users')]
            clients = [from_record(Client, x) for x in self._backend.select('clients')]
            operations = [from_record(Operation, x) for x in self._backend.select('operations')]
            receipts = [from_record(Receipt, x) for x in self._backend.select('receipts')]
            dismissed = self._backend.get_dismissed_reminders()

        names = {x.id: x.nome for x in clients}

        for x in operations:
            x.client_name = names.get(x.client_id, UNKNOWN_CLIENT)

        with self._view_lock:
            self._users = users
            self._clients = sorted(clients, key=lambda x: x.id, reverse=True)
            self._operations = sorted(operations, key=lambda x: x.id, reverse=True)
            self._receipts = sorted(receipts, key=lambda x: x.id, reverse=True)
            self._dismissed = dismissed

        _LOG.info(f'loaded {len(clients)} clients, {len(operations)} operations and {len(receipts)} receipts')

    # Users. {{{
    @typeguard.typechecked
    def login(self, email: str, password: str) -> t.Optional[User]:
        '''Checks the credentials against the store. Returns the user, or None if they don't match.'''

        with self._store('checking credentials'):
            rows = self._backend.select('users', email=email, password=password)

        if len(rows) != 1:
            _LOG.info(f'login refused for "{email}"')

            return None

        self._current_user = from_record(User, rows[0])

        return self._current_user

    def logout(self) -> None:
        self._current_user = None

    @typeguard.typechecked
    def add_user(self, draft: UserDraft) -> User:
        if not draft.nome.strip() or not draft.email.strip():
            raise ValidationError('a user needs a name and an e-mail')

        ent = User(nome=draft.nome, email=draft.email, papel=draft.papel, password=draft.password)

        with self._store('adding user'):
            row, = self._backend.insert('users', [to_record(ent, exclude=['id'])])

        ent = from_record(User, row)

        with self._view_lock:
            self._users = [ent] + self._users

        return ent

    @typeguard.typechecked
    def update_user(self, user: User) -> None:
        '''Updates a user. The password is only changed when a new one is given.'''

        fields = to_record(user, exclude=['id'] if user.password else ['id', 'password'])

        with self._store(f'updating user #{user.id}'):
            self._backend.update('users', user.id, fields)

        with self._view_lock:
            self._users = [dataclasses.replace(x, **{k: getattr(user, k) for k in fields}) if x.id == user.id else x for x in self._users]

    @typeguard.typechecked
    def delete_user(self, user_id: int) -> None:
        if self._current_user and self._current_user.id == user_id:
            raise BusinessRuleViolation('the logged user cannot be deleted')

        with self._store(f'deleting user #{user_id}'):
            self._backend.delete('users', user_id)

        with self._view_lock:
            self._users = [x for x in self._users if x.id != user_id]
    # }}}

    # Clients. {{{
    @typeguard.typechecked
    def add_client(self, draft: ClientDraft) -> Client:
        if not draft.nome.strip():
            raise ValidationError('a client needs a name')

        self._check_amounts(draft, 'limite_credito', 'taxa_juros_mensal')

        ent = Client(**dataclasses.asdict(draft), data_cadastro=self.today)

        with self._store('adding client'):
            row, = self._backend.insert('clients', [to_record(ent, exclude=['id'])])

        ent = from_record(Client, row)

        with self._view_lock:
            self._clients = [ent] + self._clients

        _LOG.info(f'client #{ent.id}, "{ent.nome}", added')

        return ent

    @typeguard.typechecked
    def update_client(self, client: Client) -> None:
        self._find_client(client.id)
        self._check_amounts(client, 'limite_credito', 'taxa_juros_mensal')

        with self._store(f'updating client #{client.id}'):
            self._backend.update('clients', client.id, to_record(client, exclude=['id', 'data_cadastro']))

        with self._view_lock:
            self._clients = [dataclasses.replace(client, data_cadastro=x.data_cadastro) if x.id == client.id else x for x in self._clients]

            for x in self._operations:
                if x.client_id == client.id:
                    x.client_name = client.nome

    @typeguard.typechecked
    def delete_client(self, client_id: int) -> None:
        '''Deletes a client. The store cascades to its operations and their receipts, and so does the view.'''

        self._find_client(client_id)

        with self._store(f'deleting client #{client_id}'):
            self._backend.delete('clients', client_id)

        with self._view_lock:
            self._forget_operations({x.id for x in self._operations if x.client_id == client_id})
            self._clients = [x for x in self._clients if x.id != client_id]

    def clients_with_operation_counts(self) -> t.List[t.Tuple[Client, int]]:
        cnt = collections.Counter(x.client_id for x in self._operations)

        return [(x, cnt[x.id]) for x in self._clients]

    @typeguard.typechecked
    def credit_info(self, client_id: int) -> CreditInfo:
        '''The client's credit limit, and the nominal value of its active operations.'''

        ent = self._find_client(client_id)
        exp = sum((x.nominal_value for x in self.operations if x.client_id == client_id and x.active), _0)

        return CreditInfo(limit=ent.limite_credito, exposure=exp)
    # }}}

    # Operations. {{{
    @typeguard.typechecked
    def create_operation(self, draft: OperationDraft) -> t.List[Operation]:
        '''
        Registers an operation.

        Returns a list with the created operation. For a "parcelamento" with two or more installments, returns one
        operation per installment, see "expand_installments". The installments are inserted as one batch: if the
        store fails, none of them exists.

        An operation that exceeds the client's remaining credit is accepted, and a warning is logged.
        '''

        if draft.type not in t.get_args(_OPERATION_TYPE):
            raise ValidationError(f'unknown operation type "{draft.type}"')

        self._check_amounts(draft, 'nominal_value')

        if draft.taxa is not None:
            self._check_amounts(draft, 'taxa')

        if draft.type != 'parcelamento' and draft.installments != 1:
            raise ValidationError(f'only "parcelamento" operations may have installments, got {draft.installments} for a "{draft.type}"')

        client = self._find_client(draft.client_id) if draft.client_id else None
        rate = draft.taxa if draft.taxa is not None else client.taxa_juros_mensal if client else _0

        if draft.type == 'parcelamento' and draft.installments != 1:
            ops = expand_installments(draft.nominal_value, draft.installments, draft.title_number, draft.issue_date, draft.due_date, rate)
            act = f'registering a {draft.installments}x installment plan'

        else:
            ent = Operation(type=draft.type)

            ent.title_number = draft.title_number
            ent.nominal_value = _Q(draft.nominal_value)
            ent.net_value = compute_net_value(draft.nominal_value, rate)
            ent.issue_date = draft.issue_date
            ent.due_date = draft.due_date
            ent.taxa = rate

            ops = [ent]
            act = 'registering operation'

        if client and (info := self.credit_info(client.id)).remaining < draft.nominal_value:
            _LOG.warning(f'operation of {draft.nominal_value} exceeds the remaining credit of client #{client.id}, {info.remaining}')

        for x in ops:
            x.client_id = draft.client_id
            x.observacoes = draft.observacoes

        with self._store(act):
            rows = self._backend.insert('operations', [to_record(x, exclude=['id']) for x in ops])

        out = [from_record(Operation, x) for x in rows]

        for x in out:
            x.client_name = client.nome if client else UNKNOWN_CLIENT

        with self._view_lock:
            self._operations = sorted(out, key=lambda x: x.id, reverse=True) + self._operations

        _LOG.info(f'registered {len(out)} operation(s), "{draft.title_number}", of {draft.type}')

        return [dataclasses.replace(x) for x in out]

    @typeguard.typechecked
    def delete_operation(self, operation_id: int) -> None:
        self._find_operation(operation_id)

        with self._serialized(operation_id):
            with self._store(f'deleting operation #{operation_id}'):
                self._backend.delete('operations', operation_id)

            self._forget_operations({operation_id})

    @typeguard.typechecked
    def set_operation_status(self, operation_id: int, status: _OPERATION_STATUS, confirmed: bool = False) -> bool:
        '''
        Changes the status of an operation by hand.

        The only manual change is marking an open or overdue operation as paid, and it requires CONFIRMED to be true.
        It bypasses the principal check entirely. Any other change is a no-op. Returns whether the status changed.
        '''

        op = self._find_operation(operation_id)

        with self._serialized(operation_id):
            if status == 'pago' and derive_status(op, self.today) != 'pago' and not confirmed:
                raise BusinessRuleViolation(f'marking operation #{operation_id} as paid requires confirmation')

            return self._apply_status(op, status, 'manual')

    @typeguard.typechecked
    def search_operations(self, term: str = '', status: t.Optional[_OPERATION_STATUS] = None) -> t.List[Operation]:
        '''Filters operations by client name or title number, case insensitive, and by status.'''

        term = term.strip().lower()

        return [
            x for x in self.operations
            if (not term or term in x.client_name.lower() or term in x.title_number.lower()) and (not status or x.status == status)
        ]
    # }}}

    # Receipts. {{{
    @typeguard.typechecked
    def create_receipt(self, draft: ReceiptDraft) -> Receipt:
        '''
        Records a receipt, and updates the operation it pays.

          1. The receipt is written.

          2. If the draft has a new due date, the operation's due date is replaced, and it is forced back to "aberto".
             The payment completion rule is not evaluated.

          3. Otherwise, if the principal paid by all the operation's receipts, this one included, reaches the nominal
             value, the operation becomes "pago".

        If the operation disappears between steps 1 and 2, it is dropped from the view and the receipt stays.
        '''

        self._check_amounts(draft, 'valor_total_recebido', 'valor_principal_pago', 'valor_juros_pago')

        with self._serialized(draft.operation_id):
            op = self._find_operation(draft.operation_id)
            ent = Receipt(**{k: v for k, v in dataclasses.asdict(draft).items() if k != 'new_due_date'})

            with self._store(f'registering a receipt for operation #{op.id}'):
                row, = self._backend.insert('receipts', [to_record(ent, exclude=['id'])])

            ent = from_record(Receipt, row)

            with self._view_lock:
                self._receipts = [ent] + self._receipts

            _LOG.info(f'receipt #{ent.id} registered for operation #{op.id}, principal {ent.valor_principal_pago}, interest {ent.valor_juros_pago}')

            try:
                if draft.new_due_date:
                    with self._store(f'extending operation #{op.id}'):
                        self._backend.update('operations', op.id, {'due_date': draft.new_due_date.isoformat(), 'status': 'aberto'})

                    _LOG.info(f'operation #{op.id} extended from {op.due_date} to {draft.new_due_date}, was "{derive_status(op, self.today)}"')

                    op.due_date = draft.new_due_date
                    op.status = 'aberto'

                elif is_settled(op, self._receipts):
                    self._apply_status(op, 'pago', 'settlement')

            except NotFoundError:
                _LOG.warning(f'operation #{op.id} is gone, receipt #{ent.id} left without status update')

                with self._view_lock:
                    self._operations = [x for x in self._operations if x.id != op.id]

        return ent

    @typeguard.typechecked
    def delete_receipt(self, receipt_id: int) -> None:
        '''
        Deletes a receipt, and reverts its effect on the operation.

        Only a paid operation is affected. If the remaining receipts no longer settle it, it goes back to "atrasado"
        when past its due date, or to "aberto".
        '''

        ent = self._find_receipt(receipt_id)

        with self._serialized(ent.operation_id):
            with self._store(f'deleting receipt #{receipt_id}'):
                self._backend.delete('receipts', receipt_id)

            with self._view_lock:
                self._receipts = [x for x in self._receipts if x.id != receipt_id]

            if (op := next((x for x in self._operations if x.id == ent.operation_id), None)) is None:
                return

            if derive_status(op, self.today) != 'pago':
                return

            try:
                self._apply_status(op, reversal_status(op, self._receipts, self.today), 'reversal')

            except NotFoundError:
                _LOG.warning(f'operation #{op.id} is gone, receipt #{receipt_id} deleted without status update')

                with self._view_lock:
                    self._operations = [x for x in self._operations if x.id != op.id]
    # }}}

    # Derived views. {{{
    def balances(self, operation_id: int) -> Balance:
        op = self._find_operation(operation_id)

        return remaining_balances(op, self.receipts)

    def snapshot(self) -> PortfolioSnapshot:
        return get_portfolio_snapshot(self.operations, self.receipts, self.today)

    def reminders(self) -> t.List[Reminder]:
        return get_reminders(self.operations, self._dismissed, self.today)

    @typeguard.typechecked
    def dismiss_reminder(self, operation_id: int) -> None:
        with self._view_lock:
            ids = self._dismissed | {operation_id}

            with self._store('saving dismissed reminders'):
                self._backend.set_dismissed_reminders(ids)

            self._dismissed = ids
    # }}}
# }}}

# Log current version info.
_LOG.info(f'Carteira version {__version__} initialized')

if __name__ == '__main__':
    import doctest

    doctest.testmod()

# vi:fdm=marker:
