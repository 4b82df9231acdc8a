# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited.
# Proprietary and confidential.
#

'''Carteira CLI test module.'''

# Core.
import os
import importlib.util

# Libs.
import pytest

# The CLI script, at the repository root.
_SCRIPT = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), '__main__.py')

def _load_cli():
    loc = importlib.util.spec_from_file_location('carteira_cli', _SCRIPT)
    mod = importlib.util.module_from_spec(loc)

    loc.loader.exec_module(mod)

    return mod

def test_wont_list_unknown_status(capsys):
    '''O CLI deve recusar um status desconhecido com uma mensagem de erro, sem exibir um traceback.'''

    sh2py = pytest.importorskip('sh2py')

    pytest.importorskip('tabulate')

    cli = _load_cli()

    assert cli.lista_operacoes(status='quitado') is sh2py.HALT
    assert capsys.readouterr().err == 'Error: status "quitado" not supported.\n'

def test_wont_simulate_plan_below_a_cent(capsys):
    '''O CLI deve recusar um parcelamento pequeno demais para o número de parcelas.'''

    sh2py = pytest.importorskip('sh2py')

    pytest.importorskip('tabulate')

    cli = _load_cli()

    assert cli.simula_parcelamento('0.90', '60', 'NF-1', '2024-07-10', '2024-08-10') is sh2py.HALT
    assert capsys.readouterr().err == 'Error: 0.90 is too small to be split in 60 installments\n'
