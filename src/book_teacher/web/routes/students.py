"""Student endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, status

from book_teacher.core.supervisor import get_supervisor
from book_teacher.db import sessions_repository, students_repository
from book_teacher.web.schemas import (
    EnrolmentListResponse,
    EnrolmentResponse,
    StudentCreate,
    StudentListResponse,
    StudentResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/students", tags=["students"])


@router.get("", response_model=StudentListResponse)
async def list_students() -> StudentListResponse:
    """List all students."""
    students = [
        StudentResponse.model_validate(s) for s in students_repository.get_all_students()
    ]
    return StudentListResponse(students=students, count=len(students))


@router.get("/{student_id}", response_model=StudentResponse)
async def get_student(student_id: int) -> StudentResponse:
    """Get a specific student by ID."""
    student = students_repository.get_student_by_id(student_id)

    if student is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Student {student_id} not found",
        )

    return StudentResponse.model_validate(student)


@router.get("/{student_id}/sessions", response_model=EnrolmentListResponse)
async def list_student_sessions(student_id: int) -> EnrolmentListResponse:
    """List the books a student has a tutoring session on."""
    if students_repository.get_student_by_id(student_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Student {student_id} not found",
        )

    sessions = [
        EnrolmentResponse.model_validate(s)
        for s in sessions_repository.list_student_sessions(student_id)
    ]
    return EnrolmentListResponse(sessions=sessions, count=len(sessions))


@router.post("", response_model=StudentResponse, status_code=status.HTTP_201_CREATED)
async def create_student(student_data: StudentCreate) -> StudentResponse:
    """Create a new student."""
    student_id = students_repository.insert_student(student_data.name.strip())
    logger.info("students.created", student_id=student_id)
    return StudentResponse(id=student_id, name=student_data.name.strip())


@router.delete("/{student_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_student(student_id: int) -> None:
    """Delete a student; their sessions, history and progress go with them."""
    await get_supervisor().discard(student_id=student_id)

    if not students_repository.delete_student(student_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Student {student_id} not found",
        )
