#!/usr/bin/env python3
"""
Admin tools for the exam session coordinator
Operator script for seeding exams and inspecting proctoring history
"""

import os
import sys
import argparse
import asyncio
import uuid
from datetime import timedelta
from typing import List, Optional

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv

dotenv_path = os.path.join(os.path.dirname(__file__), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)


from sqlalchemy import select
from app.core.database import AsyncSessionLocal, create_db_and_tables
from app.core.security import create_access_token
from app.models.exam import Exam, ExamCandidate
from app.models.proctoring import VideoDisconnection
from app.models.user import User
from app.services.activity_aggregator import build_anti_cheating_report
from app.services.exam_repository import ExamRepository
from app.utils.timezone import isoformat

USER_TYPES = ("superadmin", "admin", "candidate")


def parse_id_list(value: str) -> List[int]:
    return [int(part) for part in value.split(",") if part.strip()]


async def init_db() -> bool:
    """Create all tables"""
    try:
        await create_db_and_tables()
        print("✅ Database tables are ready")
        return True
    except Exception as e:
        print(f"❌ Error creating tables: {e}")
        return False


async def create_user(email: str, full_name: str, user_type: str) -> Optional[int]:
    """Create a user and return its id"""
    async with AsyncSessionLocal() as db:
        try:
            existing = await db.execute(select(User).filter(User.email == email))
            if existing.scalars().first():
                print(f"❌ User with email {email} already exists")
                return None

            user = User(email=email, full_name=full_name, type=user_type)
            db.add(user)
            await db.commit()

            print("✅ User created")
            print(f"   ID: {user.id}")
            print(f"   Email: {email}")
            print(f"   Type: {user_type}")
            return user.id
        except Exception as e:
            await db.rollback()
            print(f"❌ Error creating user: {e}")
            return None


async def create_exam(
    title: str,
    admin_id: int,
    candidate_ids: List[int],
    max_warnings: int = 3,
    auto_disqualify: bool = True,
    require_video: bool = False,
    video_disabled: Optional[List[int]] = None,
) -> Optional[str]:
    """Create an exam with its candidate roster"""
    async with AsyncSessionLocal() as db:
        try:
            exam = Exam(
                id=str(uuid.uuid4()),
                title=title,
                admin_id=admin_id,
                status="scheduled",
                settings={
                    "maxWarnings": max_warnings,
                    "autoDisqualifyOnMaxWarnings": auto_disqualify,
                    "requireVideoMonitoring": require_video,
                },
            )
            for user_id in candidate_ids:
                exam.candidates.append(ExamCandidate(
                    user_id=user_id,
                    status="pending",
                    warnings=0,
                    video_monitoring_enabled=user_id not in (video_disabled or []),
                ))
            db.add(exam)
            await db.commit()

            print("✅ Exam created")
            print(f"   ID: {exam.id}")
            print(f"   Title: {title}")
            print(f"   Candidates: {', '.join(str(c) for c in candidate_ids) or 'none'}")
            return exam.id
        except Exception as e:
            await db.rollback()
            print(f"❌ Error creating exam: {e}")
            return None


def issue_token(user_id: int, minutes: Optional[int] = None) -> str:
    """Print a credential token for the socket handshake"""
    expires = timedelta(minutes=minutes) if minutes else None
    token = create_access_token(user_id, expires_delta=expires)
    print(token)
    return token


async def show_exam_report(exam_id: str, repository: Optional[ExamRepository] = None) -> bool:
    """Print per-candidate anti-cheating totals for an exam"""
    repository = repository or ExamRepository(AsyncSessionLocal)
    exam = await repository.get_exam(exam_id, with_events=True)
    if exam is None:
        print(f"❌ Exam {exam_id} not found")
        return False

    report = build_anti_cheating_report(exam)
    risk_emoji = {"low": "🟢", "medium": "🟡", "high": "🔴"}

    print(f"\n🚨 Anti-cheating report for {exam.title} ({exam_id})")
    print("=" * 60)
    if not report["report"]:
        print("📋 No candidates")
        return True

    for entry in report["report"]:
        breakdown = entry["eventBreakdown"]
        print(f"{risk_emoji[entry['riskLevel']]} Candidate {entry['candidateId']} | {entry['status']} | warnings: {entry['warnings']}")
        print(f"   Events: {entry['totalEvents']} (last 24h: {entry['recentEvents']})")
        print(f"   Tab switches: {breakdown['tabSwitches']} | Copy/paste: {breakdown['copyPaste']} | "
              f"Right clicks: {breakdown['rightClicks']} | Dev tools: {breakdown['devTools']} | "
              f"Fullscreen exits: {breakdown['fullscreenExits']}")
        print("-" * 60)
    return True


async def show_disconnections(exam_id: str, user_id: Optional[int] = None) -> None:
    """Print the video disconnection windows of an exam"""
    async with AsyncSessionLocal() as db:
        query = (
            select(VideoDisconnection, ExamCandidate.user_id)
            .join(ExamCandidate, VideoDisconnection.candidate_id == ExamCandidate.id)
            .filter(ExamCandidate.exam_id == exam_id)
            .order_by(VideoDisconnection.start_time)
        )
        if user_id is not None:
            query = query.filter(ExamCandidate.user_id == user_id)

        rows = (await db.execute(query)).all()
        if not rows:
            print(f"📊 No disconnections recorded for exam {exam_id}")
            return

        print(f"📊 Disconnections for exam {exam_id}: {len(rows)}")
        print("-" * 80)
        for disconnection, candidate_user_id in rows:
            end = isoformat(disconnection.end_time) or "still disconnected"
            print(f"[{isoformat(disconnection.start_time)} -> {end}] candidate {candidate_user_id}: {disconnection.reason}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Admin tools for the exam session coordinator")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('init-db', help='Create database tables')

    user_parser = subparsers.add_parser('create-user', help='Create a user')
    user_parser.add_argument('--email', required=True, help='User email')
    user_parser.add_argument('--name', required=True, help='Full name')
    user_parser.add_argument('--type', choices=USER_TYPES, default='candidate', help='User type')

    exam_parser = subparsers.add_parser('create-exam', help='Create an exam')
    exam_parser.add_argument('--title', required=True, help='Exam title')
    exam_parser.add_argument('--admin-id', type=int, required=True, help='Administering user id')
    exam_parser.add_argument('--candidates', type=parse_id_list, default=[], help='Comma separated candidate user ids')
    exam_parser.add_argument('--max-warnings', type=int, default=3, help='Warnings before disqualification')
    exam_parser.add_argument('--no-auto-disqualify', action='store_true', help='Never disqualify automatically')
    exam_parser.add_argument('--require-video', action='store_true', help='Require video monitoring')
    exam_parser.add_argument('--video-disabled', type=parse_id_list, default=[], help='Candidates without video monitoring')

    token_parser = subparsers.add_parser('issue-token', help='Issue a credential token')
    token_parser.add_argument('--user-id', type=int, required=True, help='User id')
    token_parser.add_argument('--minutes', type=int, help='Token lifetime in minutes')

    report_parser = subparsers.add_parser('exam-report', help='Anti-cheating report for an exam')
    report_parser.add_argument('--exam-id', required=True, help='Exam id')

    disconnections_parser = subparsers.add_parser('disconnections', help='Video disconnection history')
    disconnections_parser.add_argument('--exam-id', required=True, help='Exam id')
    disconnections_parser.add_argument('--user-id', type=int, help='Candidate user id')

    return parser


def main(argv: Optional[List[str]] = None):
    """Entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    if args.command == 'issue-token':
        issue_token(args.user_id, args.minutes)
        return

    print("🚀 Exam Session Coordinator - Admin Tools")
    print("=" * 50)

    if args.command == 'init-db':
        asyncio.run(init_db())

    elif args.command == 'create-user':
        asyncio.run(create_user(args.email, args.name, args.type))

    elif args.command == 'create-exam':
        asyncio.run(create_exam(
            args.title,
            args.admin_id,
            args.candidates,
            max_warnings=args.max_warnings,
            auto_disqualify=not args.no_auto_disqualify,
            require_video=args.require_video,
            video_disabled=args.video_disabled,
        ))

    elif args.command == 'exam-report':
        asyncio.run(show_exam_report(args.exam_id))

    elif args.command == 'disconnections':
        asyncio.run(show_disconnections(args.exam_id, args.user_id))


if __name__ == "__main__":
    main()
