import pytest

import gh_project_editor as gpe

from .helpers import make_fields, make_item, make_snapshot, make_state, press, select_cell


def _text(fragments):
    return ''.join(text for _style, text in fragments)


def _styles_for(fragments, needle):
    return [style for style, text in fragments if needle in text]


def test_truncate_and_pad_use_display_width():
    assert gpe._truncate('abcdef', 4) == 'abc…'
    assert gpe._truncate('abc', 4) == 'abc'
    assert gpe._truncate('line\nbreak', 20) == 'line break'
    assert gpe._pad_display('ab', 4) == 'ab  '
    assert gpe._display_width('日本') == 4
    assert gpe._pad_display('日本語', 5) == '日本…'


def test_first_visible_column_keeps_selection_on_screen():
    widths = [10, 10, 10, 10]
    assert gpe._first_visible_column(widths, 0, 30) == 0
    assert gpe._first_visible_column(widths, 3, 30) == 2
    assert gpe._first_visible_column(widths, 3, 100) == 0


def test_grid_shows_fields_values_and_cursor(state_path):
    fields = make_fields()
    items = [
        make_item(fields, values={'Status': 'Doing', 'Estimate': 2.0}),
        make_item(fields, item_id='item-2', title='Task Two'),
    ]
    state = make_state(make_snapshot(items=items, fields=fields), state_path)
    select_cell(state, 'Status')

    frags = gpe.build_grid_fragments(state, width=200)
    text = _text(frags)

    assert 'Alpha' in text
    assert '@tester' in text
    for name in ('Title', 'Status', 'Due', 'Estimate'):
        assert name in text
    assert 'Task Two' in text
    doing = _styles_for(frags, 'Doing')
    assert doing == ['class:value.select.yellow class:cell.cursor']
    assert any(t.strip() == '2' for _s, t in frags)


def test_grid_shows_editor_while_editing(state_path):
    state = make_state(make_snapshot(), state_path)
    select_cell(state, 'Status')
    press(state, 'enter', 'down')
    frags = gpe.build_grid_fragments(state, width=200)
    assert ('class:editor.option.cursor', '  Doing  ') in frags
    assert gpe.EDIT_HINTS['select'] in _text(frags)


def test_grid_text_editor_shows_caret(state_path):
    state = make_state(make_snapshot(), state_path)
    select_cell(state, 'Title')
    press(state, 'enter', 'home')
    frags = gpe.build_grid_fragments(state)
    assert ('class:editor.entry class:editor.caret', 'T') in frags


def test_grid_before_first_load(state_path):
    state = make_state(None, state_path)
    assert 'Loading project' in _text(gpe.build_grid_fragments(state))


def test_grid_error_and_switch_overlays(state_path):
    state = make_state(make_snapshot(), state_path)
    state.fail('Something broke')
    assert 'Something broke' in _text(gpe.build_grid_fragments(state))
    press(state, 'x', 'p')
    text = _text(gpe.build_grid_fragments(state))
    assert '#2 Beta' in text


def test_status_bar(state_path):
    state = make_state(make_snapshot(), state_path)
    select_cell(state, 'Notes')
    state.status_line = 'Saved'
    bar = gpe.build_status_bar(state)
    assert bar.startswith(' BROWSE')
    assert 'item 1/1' in bar
    assert 'Notes' in bar
    assert bar.endswith('Saved')


def test_main_no_ui_prints_summary(monkeypatch, tmp_path, capsys):
    cfg_path = tmp_path / 'cfg.yaml'
    cfg_path.write_text(
        f'log_path: {tmp_path / "editor.log"}\nstate_path: {tmp_path / "ui.json"}\n',
        encoding='utf-8',
    )
    monkeypatch.setenv('GITHUB_TOKEN', 'ghp_test')
    fields = make_fields()
    snap = make_snapshot(items=[make_item(fields, values={'Status': 'Done'})], fields=fields)
    calls = []

    def fake_snapshot(token, index, project_id, owner='', owner_type='user'):
        calls.append((token, index, project_id))
        return snap

    monkeypatch.setattr(gpe, 'fetch_snapshot', fake_snapshot)

    gpe.main(['--config', str(cfg_path), '--no-ui', '--project', '1'])

    out = capsys.readouterr().out
    assert calls == [('ghp_test', 1, None)]
    assert 'User: tester' in out
    assert 'Active: #1 Alpha' in out
    assert 'Task One' in out
    assert 'Status=Done' in out


def test_main_without_token_exits(monkeypatch, tmp_path):
    cfg_path = tmp_path / 'cfg.yaml'
    cfg_path.write_text(f'log_path: {tmp_path / "editor.log"}\n', encoding='utf-8')
    monkeypatch.setattr(gpe, 'load_dotenv_token', lambda: None)
    with pytest.raises(SystemExit) as exc:
        gpe.main(['--config', str(cfg_path), '--token-file', str(tmp_path / 'none'), '--no-ui'])
    assert exc.value.code == 1


def test_main_bad_config_exits(tmp_path):
    cfg_path = tmp_path / 'cfg.yaml'
    cfg_path.write_text('owner_type: galaxy\n', encoding='utf-8')
    with pytest.raises(SystemExit) as exc:
        gpe.main(['--config', str(cfg_path)])
    assert exc.value.code == 2
