import json
import logging
import textwrap

import pytest

import gh_project_editor as gpe


def _write(path, text):
    path.write_text(textwrap.dedent(text), encoding='utf-8')
    return str(path)


def test_load_config_reads_all_keys(tmp_path):
    path = _write(tmp_path / 'cfg.yaml', """
        owner: octo-org
        owner_type: ORG
        refresh_interval: 15
        state_path: ~/custom.ui.json
        log_path: /tmp/editor.log
        iteration_editing: true
        style:
          value.date: "#ffaf00"
        unknown_key: ignored
    """)
    cfg = gpe.load_config(path)
    assert cfg.owner == 'octo-org'
    assert cfg.owner_type == 'org'
    assert cfg.refresh_interval == 15.0
    assert cfg.state_path.endswith('custom.ui.json')
    assert not cfg.state_path.startswith('~')
    assert cfg.log_path == '/tmp/editor.log'
    assert cfg.iteration_editing is True
    assert cfg.style == {'value.date': '#ffaf00'}


def test_load_config_defaults(tmp_path):
    assert gpe.load_config(None) == gpe.Config()
    cfg = gpe.load_config(_write(tmp_path / 'empty.yaml', ''))
    assert cfg.refresh_interval == 60.0
    assert cfg.iteration_editing is False


def test_user_key_is_an_owner_alias(tmp_path):
    assert gpe.load_config(_write(tmp_path / 'c.yaml', 'user: octocat\n')).owner == 'octocat'


@pytest.mark.parametrize('body', [
    '- just\n- a list\n',
    'owner_type: team\n',
    'refresh_interval: soon\n',
    'refresh_interval: 0\n',
    'style: [red]\n',
    'owner: [a, b]\n',
])
def test_load_config_rejects_bad_values(tmp_path, body):
    with pytest.raises(ValueError):
        gpe.load_config(_write(tmp_path / 'bad.yaml', body))


def test_dotenv_token(tmp_path):
    (tmp_path / '.env').write_text('# comment\nOTHER=1\nGITHUB_TOKEN="ghp_abc"\n', encoding='utf-8')
    assert gpe.load_dotenv_token([str(tmp_path)]) == 'ghp_abc'
    assert gpe.load_dotenv_token([str(tmp_path / 'missing')]) is None


def test_token_file_formats(tmp_path):
    as_json = tmp_path / 'access_token'
    as_json.write_text(json.dumps({'token': 'ghp_json'}), encoding='utf-8')
    assert gpe.load_token_file(str(as_json)) == 'ghp_json'

    bare = tmp_path / 'bare'
    bare.write_text('ghp_bare\n', encoding='utf-8')
    assert gpe.load_token_file(str(bare)) == 'ghp_bare'

    assert gpe.load_token_file(str(tmp_path / 'nope')) is None
    assert gpe.load_token_file(None) is None


def test_resolve_token_order(monkeypatch, tmp_path):
    token_file = tmp_path / 'access_token'
    token_file.write_text(json.dumps({'token': 'from-file'}), encoding='utf-8')
    monkeypatch.setattr(gpe, 'load_dotenv_token', lambda: None)
    assert gpe.resolve_token(str(token_file)) == 'from-file'

    monkeypatch.setattr(gpe, 'load_dotenv_token', lambda: 'from-dotenv')
    assert gpe.resolve_token(str(token_file)) == 'from-dotenv'

    monkeypatch.setenv('GITHUB_TOKEN', 'from-env')
    assert gpe.resolve_token(str(token_file)) == 'from-env'


def test_ui_state_round_trip(tmp_path):
    path = tmp_path / 'nested' / 'ui.json'
    gpe.save_ui_state(str(path), {'project_id': 'p1', 'project_index': 3})
    assert gpe.load_ui_state(str(path)) == {'project_id': 'p1', 'project_index': 3}

    path.write_text('{not json', encoding='utf-8')
    assert gpe.load_ui_state(str(path)) == {}
    assert gpe.load_ui_state(str(tmp_path / 'absent.json')) == {}


def test_setup_logging_writes_file(tmp_path):
    log_path = tmp_path / 'editor.log'
    logger = gpe.setup_logging(str(log_path), 'info')
    logger.info('hello from test')
    logger.debug('hidden')
    for h in logger.handlers:
        h.flush()
    text = log_path.read_text(encoding='utf-8')
    assert 'INFO hello from test' in text
    assert 'hidden' not in text
    assert len(logger.handlers) == 1
    gpe.setup_logging(str(log_path), 'ERROR')
    assert len(logger.handlers) == 1
    assert logger.handlers[0].level == logging.ERROR
