"""CLI script to create subjects and modules from a JSON file.
Usage: python scripts/seed_subjects.py subjects.json

The file holds a list of objects such as
`{"name": "math", "modules": [{"name": "algebra", "description": "..."}]}`.
Existing subjects are kept; their missing modules are added.
"""
import sys
import argparse
import json
import pathlib
# Ensure `backend/` is on sys.path so `forum` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from forum.database import engine, create_db_and_tables
from forum.errors import ForumError
from forum import services


def seed(session: Session, entries: list) -> dict:
    """Create the subjects/modules described by `entries`.

    Returns counters for created subjects and modules plus per-entry errors.
    """
    svc = services.SubjectService(session)
    created_subjects = 0
    created_modules = 0
    errors = []
    for entry in entries:
        name = (entry.get('name') or '').strip()
        try:
            subject = svc.subject_repo.find_by_name(name) if name else None
            if subject is None:
                subject = svc.create_subject(name)
                created_subjects += 1
            existing = {m.name for m in subject.modules}
            for module in entry.get('modules', []):
                if module.get('name') in existing:
                    continue
                svc.add_module(subject.id, module.get('name'), module.get('description'))
                created_modules += 1
        except ForumError as e:
            errors.append({'subject': name, 'error': str(e)})
    return {'subjects': created_subjects, 'modules': created_modules, 'errors': errors}


def main(path: pathlib.Path):
    if not path.exists():
        print(f'Seed file not found at {path}')
        return
    entries = json.loads(path.read_text(encoding='utf-8'))
    create_db_and_tables()
    with Session(engine) as session:
        result = seed(session, entries)
    print(f"Created subjects: {result['subjects']}, modules: {result['modules']}")
    for err in result['errors']:
        print(f"Error seeding {err['subject']}: {err['error']}")


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('path', type=pathlib.Path, help='JSON file with subjects and modules')
    args = parser.parse_args()
    main(args.path)
