# backend/tests/test_consolidation.py
# 功能: 合并引擎状态机测试（consolidate / ignore / return_to_pipe / deconsolidate）
# 主要函数: test_reconsolidate_overwrites_without_duplicates, test_deconsolidate_is_inverse, ...
# 数据结构:
#   - 内存 SQLite 中的 Playground + 2 个问题 + 1 个 ParentTask
#   - /data-labeling/consolidate 与 /data-labeling/deconsolidate 接口响应

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import core.consolidation as consolidation
from core.consolidation import (
    consolidate_parent_task,
    deconsolidate_parent_task,
    get_consolidation_data,
    ignore_parent_task,
    return_parent_task_to_pipe,
)
from core.database import Base, get_db
from core.errors import NotFoundError, WorkflowValidationError
from core.models import (
    ConsolidatedAnswer,
    Evaluation,
    ParentTask,
    ParentTaskEvaluation,
    Playground,
    Question,
    User,
    utcnow,
)
from core.security import create_access_token
from main import app


@pytest.fixture
def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session):
    def override_get_db():
        yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def seeded(session):
    """admin + 数据标注池（2 个问题）+ 1 个任务"""
    admin = User(email="admin@marisa.care", role="admin", status="active")
    playground = Playground(name="Rotulagem", type="data_labeling")
    session.add_all([admin, playground])
    session.flush()

    q1 = Question(playground_id=playground.id, question_text="Categoria", question_type="select",
                  options=[{"label": "A", "value": "a"}], order_index=0)
    q2 = Question(playground_id=playground.id, question_text="Comentário", question_type="input_string",
                  order_index=1, required=False)
    task = ParentTask(playground_id=playground.id, file_name="photo.jpg", file_type="image",
                      file_url="http://files/photo.jpg", max_repetitions=2, current_repetitions=2)
    session.add_all([q1, q2, task])
    session.commit()
    return {"admin": admin, "playground": playground, "q1": q1, "q2": q2, "task": task}


def _answers(session, task_id):
    return session.query(ConsolidatedAnswer).filter(ConsolidatedAnswer.parent_task_id == task_id).all()


# ============== consolidate ==============

def test_consolidate_writes_one_row_per_question(session, seeded):
    task, admin = seeded["task"], seeded["admin"]
    answers = [
        {"question_id": seeded["q1"].id, "answer_value": "a"},
        {"question_id": seeded["q2"].id, "answer_text": "nítida"},
    ]

    consolidate_parent_task(session, task.id, answers, admin.id, "ok")

    session.refresh(task)
    assert task.status == "consolidated"
    assert task.consolidated_by == admin.id
    assert task.consolidated_at is not None
    assert task.admin_notes == "ok"
    assert len(_answers(session, task.id)) == 2


def test_repeated_consolidate_is_idempotent(session, seeded):
    task, admin = seeded["task"], seeded["admin"]
    answers = [{"question_id": seeded["q1"].id, "answer_value": "a"}]

    consolidate_parent_task(session, task.id, answers, admin.id)
    consolidate_parent_task(session, task.id, answers, admin.id)

    rows = _answers(session, task.id)
    assert len(rows) == 1
    assert rows[0].answer_value == "a"


def test_reconsolidate_overwrites_without_duplicates(session, seeded):
    task, admin, q1 = seeded["task"], seeded["admin"], seeded["q1"]

    consolidate_parent_task(session, task.id, [{"question_id": q1.id, "answer_value": "a"}], admin.id)
    consolidate_parent_task(session, task.id, [{"question_id": q1.id, "answer_value": "b"}], admin.id)

    rows = _answers(session, task.id)
    assert len(rows) == 1
    assert rows[0].answer_value == "b"


def test_consolidate_rejects_bad_answers(session, seeded):
    task, admin, q1 = seeded["task"], seeded["admin"], seeded["q1"]

    other = Playground(name="Outro", type="data_labeling")
    session.add(other)
    session.flush()
    foreign = Question(playground_id=other.id, question_text="?", question_type="boolean")
    session.add(foreign)
    session.commit()

    bad_inputs = [
        None,
        [],
        [{"answer_value": "a"}],
        [{"question_id": q1.id}],
        [{"question_id": q1.id, "answer_value": "  ", "answer_text": ""}],
        [{"question_id": q1.id, "answer_value": "a"}, {"question_id": q1.id, "answer_value": "b"}],
        [{"question_id": foreign.id, "answer_value": "true"}],
        [{"question_id": 5, "answer_value": "a"}],
        [{"question_id": ["x"], "answer_value": "a"}],
    ]
    for answers in bad_inputs:
        with pytest.raises(WorkflowValidationError):
            consolidate_parent_task(session, task.id, answers, admin.id)

    session.refresh(task)
    assert task.status == "active"
    assert _answers(session, task.id) == []


def test_consolidate_unknown_task(session, seeded):
    with pytest.raises(NotFoundError):
        consolidate_parent_task(
            session, "missing", [{"question_id": seeded["q1"].id, "answer_value": "a"}], seeded["admin"].id
        )


def test_consolidate_failure_rolls_back_status_and_answers(session, seeded, monkeypatch):
    task, admin, q1 = seeded["task"], seeded["admin"], seeded["q1"]

    def failing_commit():
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(session, "commit", failing_commit)
    with pytest.raises(SQLAlchemyError):
        consolidate_parent_task(session, task.id, [{"question_id": q1.id, "answer_value": "a"}], admin.id)
    monkeypatch.undo()

    session.refresh(task)
    assert task.status == "active"
    assert task.consolidated_at is None
    assert _answers(session, task.id) == []


def test_ignore_failure_rolls_back_and_logs(session, seeded, monkeypatch, caplog):
    task = seeded["task"]

    def failing_commit():
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(logging.getLogger("consolidation"), "propagate", True)
    monkeypatch.setattr(session, "commit", failing_commit)
    with caplog.at_level("ERROR", logger="consolidation"):
        with pytest.raises(SQLAlchemyError):
            ignore_parent_task(session, task.id, "duplicada", seeded["admin"].id)
        with pytest.raises(SQLAlchemyError):
            return_parent_task_to_pipe(session, task.id, 1, seeded["admin"].id)
    monkeypatch.undo()

    assert len([r for r in caplog.records if "已回滚" in r.getMessage()]) == 2
    session.refresh(task)
    assert task.status == "active"
    assert task.extra_repetitions == 0
    assert task.ignore_reason is None


def test_ignored_task_can_be_consolidated(session, seeded):
    task, admin, q1 = seeded["task"], seeded["admin"], seeded["q1"]

    ignore_parent_task(session, task.id, "imagem corrompida", admin.id)
    consolidate_parent_task(session, task.id, [{"question_id": q1.id, "answer_value": "a"}], admin.id)

    session.refresh(task)
    assert task.status == "consolidated"
    assert task.ignore_reason is None


# ============== deconsolidate ==============

def test_deconsolidate_is_inverse(session, seeded):
    task, admin = seeded["task"], seeded["admin"]
    answers = [
        {"question_id": seeded["q1"].id, "answer_value": "a", "source_evaluation_id": "ev-1"},
        {"question_id": seeded["q2"].id, "answer_text": "texto"},
    ]

    consolidate_parent_task(session, task.id, answers, admin.id, "nota")
    once = {(a.question_id, a.answer_value, a.answer_text) for a in _answers(session, task.id)}

    deconsolidate_parent_task(session, task.id)
    session.refresh(task)
    assert task.status == "active"
    assert task.consolidated_at is None
    assert task.consolidated_by is None
    assert task.admin_notes is None
    assert _answers(session, task.id) == []

    consolidate_parent_task(session, task.id, answers, admin.id, "nota")
    again = {(a.question_id, a.answer_value, a.answer_text) for a in _answers(session, task.id)}
    assert again == once


def test_deconsolidate_requires_consolidated(session, seeded):
    with pytest.raises(WorkflowValidationError):
        deconsolidate_parent_task(session, seeded["task"].id)
    with pytest.raises(NotFoundError):
        deconsolidate_parent_task(session, "missing")


# ============== ignore ==============

@pytest.mark.parametrize("reason", [None, "", "   "])
def test_ignore_requires_reason(session, seeded, reason):
    task = seeded["task"]
    with pytest.raises(WorkflowValidationError):
        ignore_parent_task(session, task.id, reason, seeded["admin"].id)
    session.refresh(task)
    assert task.status == "active"
    assert task.ignore_reason is None


def test_ignore_records_reason(session, seeded):
    task = seeded["task"]
    ignore_parent_task(session, task.id, "  duplicada ", seeded["admin"].id)
    session.refresh(task)
    assert task.status == "ignored"
    assert task.ignore_reason == "duplicada"
    assert task.consolidated_by == seeded["admin"].id


def test_ignore_refused_on_consolidated(session, seeded):
    task, admin, q1 = seeded["task"], seeded["admin"], seeded["q1"]
    consolidate_parent_task(session, task.id, [{"question_id": q1.id, "answer_value": "a"}], admin.id)
    with pytest.raises(WorkflowValidationError):
        ignore_parent_task(session, task.id, "motivo", admin.id)


# ============== return_to_pipe ==============

@pytest.mark.parametrize("extra", [0, -1, None, True, "2"])
def test_return_to_pipe_validates_before_touching_db(session, seeded, monkeypatch, extra):
    def unexpected(*args, **kwargs):
        raise AssertionError("task lookup must not happen")

    monkeypatch.setattr(consolidation, "_get_task", unexpected)
    with pytest.raises(WorkflowValidationError):
        return_parent_task_to_pipe(session, seeded["task"].id, extra, seeded["admin"].id)


def test_return_to_pipe_adds_quota(session, seeded):
    task, playground = seeded["task"], seeded["playground"]
    ignore_parent_task(session, task.id, "ruim", seeded["admin"].id)

    return_parent_task_to_pipe(session, task.id, 2, seeded["admin"].id, "mais avaliações")

    session.refresh(task)
    session.refresh(playground)
    assert task.status == "returned_to_pipe"
    assert task.extra_repetitions == 2
    assert task.total_repetitions == 4
    assert task.admin_notes == "mais avaliações"
    assert task.ignore_reason is None
    assert playground.has_returned_tasks is True


def test_return_to_pipe_refused_on_consolidated(session, seeded):
    task, admin, q1 = seeded["task"], seeded["admin"], seeded["q1"]
    consolidate_parent_task(session, task.id, [{"question_id": q1.id, "answer_value": "a"}], admin.id)
    with pytest.raises(WorkflowValidationError):
        return_parent_task_to_pipe(session, task.id, 1, admin.id)


# ============== 详情 ==============

def test_consolidation_data_groups_answers_by_session(session, seeded):
    task, q1, q2 = seeded["task"], seeded["q1"], seeded["q2"]
    worker = User(email="w@marisa.care", full_name="Worker", role="tester")
    session.add(worker)
    session.flush()
    session.add_all([
        ParentTaskEvaluation(parent_task_id=task.id, user_id=worker.id, session_id="s1", evaluated_at=utcnow()),
        Evaluation(playground_id=task.playground_id, user_id=worker.id, question_id=q2.id,
                   parent_task_id=task.id, session_id="s1", answer_text="borrada"),
        Evaluation(playground_id=task.playground_id, user_id=worker.id, question_id=q1.id,
                   parent_task_id=task.id, session_id="s1", answer_value="a"),
    ])
    session.commit()

    data = get_consolidation_data(session, task.id)

    assert data["id"] == task.id
    assert len(data["evaluations"]) == 1
    evaluation = data["evaluations"][0]
    assert evaluation["user_email"] == "w@marisa.care"
    assert evaluation["user_name"] == "Worker"
    assert [a["question_text"] for a in evaluation["answers"]] == ["Categoria", "Comentário"]
    assert [a["answer"] for a in evaluation["answers"]] == ["a", "borrada"]
    assert data["consolidated_answers"] == []


# ============== 接口 ==============

def _headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def test_consolidate_endpoint_actions(client, session, seeded):
    task, admin, q1 = seeded["task"], seeded["admin"], seeded["q1"]
    headers = _headers(admin)

    resp = client.post("/data-labeling/consolidate", json={"action": "ignore"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "parent_task_id and action are required"

    resp = client.post("/data-labeling/consolidate", json={"parent_task_id": task.id, "action": "approve"},
                       headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("Invalid action")

    resp = client.post("/data-labeling/consolidate", json={"parent_task_id": task.id, "action": "consolidate"},
                       headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "consolidated_answers array is required for consolidation"

    resp = client.post("/data-labeling/consolidate",
                       json={"parent_task_id": task.id, "action": "ignore", "ignore_reason": "  "},
                       headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "ignore_reason is required when ignoring a task"

    resp = client.post("/data-labeling/consolidate",
                       json={"parent_task_id": task.id, "action": "return_to_pipe", "extra_repetitions": 0},
                       headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "extra_repetitions must be at least 1"

    session.refresh(task)
    assert task.status == "active"

    resp = client.post(
        "/data-labeling/consolidate",
        json={
            "parent_task_id": task.id,
            "action": "consolidate",
            "consolidated_answers": [{"question_id": q1.id, "answer_value": "a"}],
        },
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "action": "consolidated"}

    resp = client.post("/data-labeling/deconsolidate", json={"parent_task_id": task.id}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["message"] == "Task deconsolidated successfully"

    resp = client.post("/data-labeling/deconsolidate", json={"parent_task_id": task.id}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Task is not consolidated"

    resp = client.post("/data-labeling/deconsolidate", json={"parent_task_id": "missing"}, headers=headers)
    assert resp.status_code == 404


def test_consolidation_routes_require_admin(client, session, seeded):
    tester = User(email="t@marisa.care", role="tester", status="active")
    session.add(tester)
    session.commit()
    headers = _headers(tester)
    task = seeded["task"]

    for method, path, body in [
        ("post", "/data-labeling/consolidate", {"parent_task_id": task.id, "action": "ignore", "ignore_reason": "x"}),
        ("post", "/data-labeling/deconsolidate", {"parent_task_id": task.id}),
        ("get", f"/data-labeling/consolidation/{task.id}", None),
        ("get", f"/data-labeling/task-metrics/{task.id}", None),
        ("get", f"/data-labeling/parent-tasks/{task.playground_id}", None),
    ]:
        resp = client.request(method.upper(), path, json=body, headers=headers)
        assert resp.status_code == 403, path
        assert resp.json()["detail"] == "Admin access required"

    session.refresh(task)
    assert task.status == "active"


def test_consolidation_detail_endpoint(client, session, seeded):
    headers = _headers(seeded["admin"])
    resp = client.get(f"/data-labeling/consolidation/{seeded['task'].id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["evaluations"] == []

    resp = client.get("/data-labeling/consolidation/missing", headers=headers)
    assert resp.status_code == 404


@pytest.mark.parametrize("question_id", [5, ["x"]])
def test_consolidate_endpoint_rejects_non_string_question_id(client, session, seeded, question_id):
    task = seeded["task"]
    resp = client.post(
        "/data-labeling/consolidate",
        json={
            "parent_task_id": task.id,
            "action": "consolidate",
            "consolidated_answers": [{"question_id": question_id, "answer_value": "a"}],
        },
        headers=_headers(seeded["admin"]),
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "consolidated_answers[0].question_id must be a string"

    session.refresh(task)
    assert task.status == "active"


def test_task_routes_report_database_errors(client, session, seeded, monkeypatch):
    task = seeded["task"]
    headers = _headers(seeded["admin"])
    original_query = session.query

    def failing_query(*entities, **kwargs):
        if entities and entities[0] is ParentTask:
            raise OperationalError("SELECT parent_tasks", {}, Exception("db down"))
        return original_query(*entities, **kwargs)

    monkeypatch.setattr(session, "query", failing_query)

    for path in [
        f"/data-labeling/parent-tasks/{task.playground_id}",
        f"/data-labeling/task-metrics/{task.id}",
        f"/data-labeling/consolidation/{task.id}",
    ]:
        resp = client.get(path, headers=headers)
        assert resp.status_code == 500, path
        assert "db down" in resp.json()["detail"], path
