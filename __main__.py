#!/usr/bin/env python3
#
# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#

'''Carteira CLI.'''

# Python.
import os
import sys
import json
import locale
import typing
import decimal
import logging
import datetime
import textwrap
import functools

# Libs.
import sh2py
import tabulate

if typing.TYPE_CHECKING:
    import platformdirs

# Carteira.
import carteira

# Print helper.
_PR = functools.partial(print, file=sys.stderr, flush=True)

# Options for the operation table.
_OPERATION_LIST_OPTS = {
    'headers': ['Nº', 'Client', 'Type', 'Title', 'Nominal', 'Net', 'Due', 'Status'],
    'colalign': ('right', 'left', 'left', 'left', 'right', 'right', 'center', 'center')
}

# Options for the installment simulation table.
_INSTALLMENT_LIST_OPTS = {
    'headers': ['Title', 'Due', 'Nominal', 'Net'],
    'colalign': ('left', 'center', 'right', 'right')
}

# Options for the reminder table.
_REMINDER_LIST_OPTS = {
    'headers': ['Op.', 'Client', 'Due', 'Nominal'],
    'colalign': ('right', 'left', 'center', 'right')
}

# Options for the upcoming due dates table.
_UPCOMING_LIST_OPTS = {
    'headers': ['Op.', 'Client', 'Due', 'Days', 'Category', 'Nominal'],
    'colalign': ('right', 'left', 'center', 'right', 'left', 'right')
}

# A logger for this module.
_LOG = logging.getLogger('carteira_cli')

# Affirmative answers.
_YES = ['s', 'sim', 'y', 'yes']

class LocalDirectoryBackend(carteira.InMemoryBackend):
    '''
    A storage backend that keeps the tables in a JSON file, using the "platformdirs" Python package for its location.

    The whole file is read on construction, and rewritten after every successful write. Good enough for a single user
    on a single machine. Writes coming from two processes at once will clobber each other.

        disk_backend = LocalDirectoryBackend('carteira')
    '''

    def __init__(self, app_name: str, author_name: str = 'Inco') -> None:
        import platformdirs

        super().__init__()

        self._platform: 'platformdirs.api.PlatformDirsABC' = platformdirs.PlatformDirs(app_name, author_name)
        self._path = os.path.join(self._platform.user_data_dir, f'{app_name}.json')

        try:
            with open(self._path, 'r') as f:
                doc = json.load(f)

            _LOG.info(f'Data file “{self._path}” was found.')

        except FileNotFoundError:
            _LOG.info(f'Data file “{self._path}” was not found, starting empty.')

            return

        except (OSError, ValueError) as exc:
            raise carteira.BackendError(f'could not read “{self._path}”: {exc}') from exc

        for name, rows in doc.get('tables', {}).items():
            self._tables[name] = {x['id']: x for x in rows}

        self._serial.update(doc.get('serial', {}))
        self._dismissed = set(doc.get('dismissed', []))

    def _dump(self) -> None:
        doc = {
            'tables': {k: list(v.values()) for k, v in self._tables.items()},
            'serial': dict(self._serial),
            'dismissed': sorted(self._dismissed)
        }

        try:
            os.makedirs(self._platform.user_data_dir, exist_ok=True)

            with open(self._path, 'w') as f:
                json.dump(doc, f, indent=2)

        except OSError as exc:
            raise carteira.BackendError(f'could not write “{self._path}”: {exc}') from exc

        _LOG.debug(f'Data file “{self._path}” written to disk.')

    def insert(self, table, rows):
        out = super().insert(table, rows)

        self._dump()

        return out

    def update(self, table, id, fields):
        super().update(table, id, fields)
        self._dump()

    def delete(self, table, id):
        super().delete(table, id)
        self._dump()

    def set_dismissed_reminders(self, ids):
        super().set_dismissed_reminders(ids)
        self._dump()

# Helpers. {{{
def _setup(kwargs: typing.Dict[str, str]) -> carteira.Portfolio:
    if kwargs.get('debug', '').lower() in _YES:
        logging.basicConfig(level=logging.DEBUG)

    portfolio = carteira.Portfolio(LocalDirectoryBackend('carteira'))

    portfolio.load()

    return portfolio

def _emit(data: typing.List[typing.List[typing.Any]], opts: typing.Dict[str, typing.Any], fmt: str) -> typing.Any:
    '''Prints a table in a Tabulate format, or JSON, with every cell as a string.'''

    if fmt in tabulate.tabulate_formats:
        func = functools.partial(locale.currency, symbol=False, grouping=True)

        tabulate.PRESERVE_WHITESPACE = True

        _PR()
        _PR(tabulate.tabulate([[func(y) if isinstance(y, decimal.Decimal) else y for y in x] for x in data], tablefmt=fmt, **opts))
        _PR()

    elif fmt in ['json', 'raw']:
        print(json.dumps([dict(zip(opts['headers'], map(str, x))) for x in data]))

    else:
        _PR(f'Error, format "{fmt}" not supported.')

        return sh2py.HALT

def _date(value: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(value)

    except ValueError as exc:
        raise carteira.ValidationError(f'invalid date "{value}", use the ISO 8601 format') from exc
# }}}

def ajuda(command=''):
    '''
    Supported commands:

    - "simula_parcelamento", shows how an installment plan would be split;
    - "registra_cliente", registers a client;
    - "registra_operacao", registers an operation, or an installment plan;
    - "registra_recebimento", registers a receipt, or a due date extension;
    - "exclui_recebimento", deletes a receipt;
    - "baixa_operacao", marks an operation as paid, by hand;
    - "lista_operacoes", lists operations;
    - "credito_cliente", shows a client's credit usage;
    - "resumo_carteira", shows the portfolio metrics;
    - "lembretes", lists due date reminders.

    Every command accepts "debug=s", which activates the "DEBUG" level in the "logging" module.
    '''

    dic = globals()

    if command and command in dic and dic[command].__doc__ and command != 'ajuda':
        _PR(textwrap.dedent(dic[command].__doc__))

    else:
        _PR(textwrap.dedent(str(ajuda.__doc__)))

    return sh2py.HALT

def simula_parcelamento(valor, parcelas, titulo, emissao, vencimento, taxa='0', **kwargs):
    '''
    Shows the installments of a plan, without registering anything.

      carteira simula_parcelamento 1000 3 NF-123 2024-01-10 2024-02-10 taxa=2.5

    Parameters:

      • "valor", the nominal value of the whole plan;

      • "parcelas", the number of installments, from 2 to 60;

      • "titulo", the base title number;

      • "emissao" and "vencimento", issue date and first due date, ISO 8601;

      • "taxa", optional, monthly interest rate in percent;

      • "formato", the output format. A Python Tabulate format, or "json".
    '''

    if kwargs.get('debug', '').lower() in _YES:
        logging.basicConfig(level=logging.DEBUG)

    try:
        ops = carteira.expand_installments(carteira.to_money(valor), int(parcelas), titulo, _date(emissao), _date(vencimento), decimal.Decimal(taxa))

    except (ValueError, decimal.InvalidOperation) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    data = [[x.title_number, x.due_date.strftime('%x'), x.nominal_value, x.net_value] for x in ops]

    return _emit(data, _INSTALLMENT_LIST_OPTS, kwargs.get('formato', 'fancy_outline'))

def registra_cliente(nome, limite='0', taxa='0', **kwargs):
    '''
    Registers a client.

      carteira registra_cliente 'Padaria Pão Quente' limite=50000 taxa=3.5 cpf_cnpj=12.345.678/0001-90

    Optional parameters: "limite", the credit limit; "taxa", the default monthly rate in percent; "cpf_cnpj";
    "email"; "telefone" and "endereco".
    '''

    try:
        portfolio = _setup(kwargs)
        draft = carteira.ClientDraft(nome=nome, limite_credito=carteira.to_money(limite), taxa_juros_mensal=decimal.Decimal(taxa))

        for x in ['cpf_cnpj', 'email', 'telefone', 'endereco']:
            setattr(draft, x, kwargs.get(x, ''))

        ent = portfolio.add_client(draft)

    except (carteira.CarteiraError, decimal.InvalidOperation) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    _PR(f'Client #{ent.id} registered.')

def registra_operacao(tipo, titulo, valor, emissao, vencimento, cliente='0', taxa='', parcelas='1', **kwargs):
    '''
    Registers an operation.

      carteira registra_operacao duplicata NF-123 1000 2024-01-10 2024-02-10 cliente=1

    Parameters:

      • "tipo", one of "duplicata", "cheque" or "parcelamento";

      • "titulo", the title number;

      • "valor", the nominal value;

      • "emissao" and "vencimento", issue date and due date, ISO 8601;

      • "cliente", optional, the client number;

      • "taxa", optional, monthly interest rate in percent. Defaults to the client's rate;

      • "parcelas", optional, the number of installments of a "parcelamento".
    '''

    try:
        portfolio = _setup(kwargs)
        draft = carteira.OperationDraft(
            type=tipo,
            title_number=titulo,
            nominal_value=carteira.to_money(valor),
            issue_date=_date(emissao),
            due_date=_date(vencimento),
            taxa=decimal.Decimal(taxa) if taxa else None,
            client_id=int(cliente),
            installments=int(parcelas),
            observacoes=kwargs.get('observacoes', '')
        )

        if draft.client_id and (info := portfolio.credit_info(draft.client_id)).remaining < draft.nominal_value:
            _PR(f'Warning: exceeds the remaining credit of the client, {locale.currency(info.remaining, grouping=True)}.')

        ops = portfolio.create_operation(draft)

    except (ValueError, decimal.InvalidOperation, carteira.CarteiraError) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    _PR(f'{len(ops)} operation(s) registered: {", ".join(f"#{x.id}" for x in ops)}.')

def registra_recebimento(operacao, data, principal, juros='0', total='', forma='', nova_data='', **kwargs):
    '''
    Registers a receipt against an operation.

      carteira registra_recebimento 7 2024-02-10 1000 juros=25

    Parameters:

      • "operacao", the operation number;

      • "data", the receipt date;

      • "principal" and "juros", principal and interest paid;

      • "total", optional, the amount received. Defaults to principal plus interest;

      • "forma", optional, the payment method;

      • "nova_data", optional. Turns the receipt into a due date extension, moving the due date to this one.
    '''

    try:
        portfolio = _setup(kwargs)
        pri = carteira.to_money(principal)
        jur = carteira.to_money(juros)
        ent = portfolio.create_receipt(carteira.ReceiptDraft(
            operation_id=int(operacao),
            data_recebimento=_date(data),
            valor_total_recebido=carteira.to_money(total) if total else pri + jur,
            valor_principal_pago=pri,
            valor_juros_pago=jur,
            forma_pagamento=forma,
            observacoes=kwargs.get('observacoes', ''),
            new_due_date=_date(nova_data) if nova_data else None
        ))

    except (ValueError, carteira.CarteiraError) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    _PR(f'Receipt #{ent.id} registered.')

def exclui_recebimento(recebimento, **kwargs):
    '''
    Deletes a receipt. A paid operation that is no longer settled goes back to open, or overdue.

      carteira exclui_recebimento 12
    '''

    try:
        _setup(kwargs).delete_receipt(int(recebimento))

    except (ValueError, carteira.CarteiraError) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    _PR(f'Receipt #{recebimento} deleted.')

def baixa_operacao(operacao, confirma='n', **kwargs):
    '''
    Marks an operation as paid, regardless of its receipts. Requires "confirma=s".

      carteira baixa_operacao 7 confirma=s
    '''

    try:
        done = _setup(kwargs).set_operation_status(int(operacao), 'pago', confirmed=confirma.lower() in _YES)

    except (ValueError, carteira.CarteiraError) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    _PR(f'Operation #{operacao} marked as paid.' if done else f'Operation #{operacao} unchanged.')

def lista_operacoes(busca='', status='', **kwargs):
    '''
    Lists operations, newest first.

      carteira lista_operacoes busca=padaria status=atrasado formato=json

    Optional parameters: "busca", a term searched in client names and title numbers; "status", one of "aberto",
    "pago" or "atrasado"; "formato", a Python Tabulate format, or "json".
    '''

    if status and status not in typing.get_args(carteira._OPERATION_STATUS):
        _PR(f'Error: status "{status}" not supported.')

        return sh2py.HALT

    try:
        ops = _setup(kwargs).search_operations(busca, status or None)

    except carteira.CarteiraError as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    data = [[x.id, x.client_name, x.type, x.title_number, x.nominal_value, x.net_value, x.due_date.strftime('%x'), x.status] for x in ops]

    return _emit(data, _OPERATION_LIST_OPTS, kwargs.get('formato', 'fancy_outline'))

def credito_cliente(cliente, **kwargs):
    '''
    Shows a client's credit limit, the exposure in active operations, and what remains.

      carteira credito_cliente 1
    '''

    try:
        info = _setup(kwargs).credit_info(int(cliente))

    except (ValueError, carteira.CarteiraError) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    _PR(f'Limit..............: {locale.currency(info.limit, grouping=True)}')
    _PR(f'Exposure...........: {locale.currency(info.exposure, grouping=True)}')
    _PR(f'Remaining..........: {locale.currency(info.remaining, grouping=True)}')

def resumo_carteira(**kwargs):
    '''
    Shows the portfolio metrics, and the next due dates.

      carteira resumo_carteira formato=json
    '''

    try:
        snap = _setup(kwargs).snapshot()

    except carteira.CarteiraError as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    if kwargs.get('formato', '') == 'json':
        doc = {
            'active_capital': str(snap.active_capital),
            'interest_to_receive': str(snap.interest_to_receive),
            'total_receivables': str(snap.total_receivables),
            'delinquency_value': str(snap.delinquency_value),
            'status_distribution': snap.status_distribution,
            'installments': {k: str(v) for k, v in vars(snap.installments).items()},
            'upcoming': [{'operation': x.operation.id, 'due_date': x.operation.due_date.isoformat(), 'category': x.category, 'days': x.days} for x in snap.upcoming]
        }

        print(json.dumps(doc))

        return

    cur = functools.partial(locale.currency, grouping=True)

    _PR(f'Active capital.....: {cur(snap.active_capital)}')
    _PR(f'Interest to receive: {cur(snap.interest_to_receive)}')
    _PR(f'Total receivables..: {cur(snap.total_receivables)}')
    _PR(f'Delinquency........: {cur(snap.delinquency_value)}')
    _PR(f'Status.............: {", ".join(f"{k} {v}" for k, v in snap.status_distribution.items())}')
    _PR(f'Installment plans..: {snap.installments.active_count} active of {snap.installments.total_count}, {cur(snap.installments.active_value)}')

    data = [[x.operation.id, x.operation.client_name, x.operation.due_date.strftime('%x'), x.days, x.category, x.operation.nominal_value] for x in snap.upcoming]

    return _emit(data, _UPCOMING_LIST_OPTS, kwargs.get('formato', 'fancy_outline'))

def lembretes(descarta='', **kwargs):
    '''
    Lists the open operations due in the next seven days.

      carteira lembretes
      carteira lembretes descarta=7

    The "descarta" parameter dismisses the reminder of an operation, which won't be listed again.
    '''

    try:
        portfolio = _setup(kwargs)

        if descarta:
            portfolio.dismiss_reminder(int(descarta))

            _PR(f'Reminder of operation #{descarta} dismissed.')

            return

        rems = portfolio.reminders()

    except (ValueError, carteira.CarteiraError) as exc:
        _PR(f'Error: {exc}')

        return sh2py.HALT

    data = [[x.operation_id, x.client_name, x.due_date.strftime('%x'), x.nominal_value] for x in rems]

    return _emit(data, _REMINDER_LIST_OPTS, kwargs.get('formato', 'fancy_outline'))

if __name__ == '__main__':
    cli = sh2py.CommandLineMapper()

    cli.add(ajuda)
    cli.add(simula_parcelamento)
    cli.add(registra_cliente)
    cli.add(registra_operacao)
    cli.add(registra_recebimento)
    cli.add(exclui_recebimento)
    cli.add(baixa_operacao)
    cli.add(lista_operacoes)
    cli.add(credito_cliente)
    cli.add(resumo_carteira)
    cli.add(lembretes)

    locale.setlocale(locale.LC_ALL, 'pt_BR.UTF-8')

    if cli.run() is sh2py.HALT:
        exit(1)

# vi:fdm=marker:
