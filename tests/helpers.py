from typing import Dict, List, Optional

import gh_project_editor as gpe


def make_fields() -> List[gpe.Field]:
    return [
        gpe.Field(id='f-title', name='Title', kind=gpe.KIND_TITLE),
        gpe.SingleSelectField(
            id='f-status', name='Status', kind=gpe.KIND_SINGLE_SELECT,
            options=[
                gpe.Option('opt-todo', 'Todo', 'GRAY'),
                gpe.Option('opt-doing', 'Doing', 'YELLOW'),
                gpe.Option('opt-done', 'Done', 'GREEN'),
            ],
        ),
        gpe.Field(id='f-due', name='Due', kind=gpe.KIND_DATE),
        gpe.Field(id='f-estimate', name='Estimate', kind=gpe.KIND_NUMBER),
        gpe.Field(id='f-notes', name='Notes', kind=gpe.KIND_TEXT),
        gpe.IterationField(
            id='f-sprint', name='Sprint', kind=gpe.KIND_ITERATION,
            iterations=[
                gpe.Iteration('it-1', 'Sprint 1', '2024-01-01', 14),
                gpe.Iteration('it-2', 'Sprint 2', '2024-01-15', 14),
            ],
        ),
        gpe.Field(id='f-assignees', name='Assignees', kind='ASSIGNEES'),
    ]


def field_named(fields: List[gpe.Field], name: str) -> gpe.Field:
    return next(f for f in fields if f.name == name)


def value_for(field: gpe.Field, raw) -> gpe.FieldValue:
    if field.kind == gpe.KIND_SINGLE_SELECT:
        opt = next(o for o in field.options if o.name == raw)
        return gpe.SingleSelectValue(name=raw, field=field, option_id=opt.id)
    if field.kind == gpe.KIND_ITERATION:
        it = next(i for i in field.iterations if i.title == raw)
        return gpe.IterationValue(duration=it.duration, title=it.title, field=field,
                                  iteration_id=it.id, start_date=it.start_date)
    if field.kind == gpe.KIND_DATE:
        return gpe.DateValue(date=raw, field=field)
    if field.kind == gpe.KIND_NUMBER:
        return gpe.NumberValue(value=raw, field=field)
    return gpe.TextValue(text=raw, field=field)


def make_item(fields: List[gpe.Field], item_id: str = 'item-1', item_type: str = gpe.ITEM_DRAFT_ISSUE,
              title: Optional[str] = 'Task One', content_id: str = 'draft-1',
              values: Optional[Dict[str, object]] = None) -> gpe.Item:
    item = gpe.Item(id=item_id, type=item_type, content_id=content_id)
    if title is not None:
        item.values['Title'] = value_for(field_named(fields, 'Title'), title)
    for name, raw in (values or {}).items():
        item.values[name] = value_for(field_named(fields, name), raw)
    return item


def make_projects() -> List[gpe.Project]:
    return [
        gpe.Project(id='proj-1', title='Alpha', number=1),
        gpe.Project(id='proj-2', title='Beta', number=2),
    ]


def make_snapshot(items=None, fields=None, project_index: int = 0, projects=None) -> gpe.Snapshot:
    fields = fields if fields is not None else make_fields()
    if items is None:
        items = [make_item(fields)]
    return gpe.Snapshot(
        user=gpe.User('tester'),
        projects=projects if projects is not None else make_projects(),
        project_index=project_index,
        items=items,
        fields=fields,
    )


def make_state(snapshot: Optional[gpe.Snapshot], state_path, token: Optional[str] = 'token',
               refresher=None, **config) -> gpe.EditorState:
    cfg = gpe.Config(state_path=str(state_path), **config)
    return gpe.EditorState(token, cfg, snapshot=snapshot, refresher=refresher)


def select_cell(state: gpe.EditorState, field_name: str, item_index: int = 0) -> None:
    state.cursor.item = item_index
    state.cursor.field = next(i for i, f in enumerate(state.snapshot.fields) if f.name == field_name)


def press(state: gpe.EditorState, *keys: str) -> None:
    for key in keys:
        gpe.handle_key(key, state)


class RemoteRecorder:
    """Stands in for the mutation functions; records (name, *args) per call."""

    MUTATIONS = (
        'set_item_text', 'set_item_number', 'set_item_date',
        'set_item_option', 'set_item_iteration', 'set_draft_title',
    )

    def __init__(self):
        self.calls = []
        self.fail_with: Optional[Exception] = None

    def install(self, monkeypatch) -> 'RemoteRecorder':
        for name in self.MUTATIONS:
            monkeypatch.setattr(gpe, name, self._recorder(name))
        return self

    def _recorder(self, name):
        def _call(*args):
            if self.fail_with is not None:
                raise self.fail_with
            self.calls.append((name,) + args)
        return _call


class RecordingRefresher:
    """Minimal refresher double: remembers requests, hands out queued results."""

    def __init__(self):
        self.requests = []
        self.targets = []
        self.pending: List[gpe.RefreshResult] = []
        self.generation = 0

    def request(self, project_index, project_id, forced=False):
        self.requests.append((project_index, project_id, forced))

    def bump_generation(self):
        self.generation += 1
        return self.generation

    def set_target(self, project_index, project_id):
        self.targets.append((project_index, project_id))

    def poll(self):
        return self.pending.pop(0) if self.pending else None
