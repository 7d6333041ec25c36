"""
Placement of students on routes and buses.

Every call is one unit of work: all named students are moved or none is.
The bus row is locked while its riders are counted, so two concurrent
assignments cannot both fill the last seats.
"""

from logging import getLogger
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from routehub.src import exceptions
from routehub.src.db import Bus, Route, Student

logger = getLogger("StudentAssignment")


class StudentAssignment:
    def __init__(self, session: Session):
        self.session = session

    def _students(self, studentIds: Iterable[UUID]) -> List[Student]:
        wanted = list(dict.fromkeys(studentIds))
        if not wanted:
            raise exceptions.MissingParameter(Student.id)
        students = self.session.query(Student).filter(Student.id.in_(wanted)).all()
        found = {student.id for student in students}
        for studentId in wanted:
            if studentId not in found:
                raise exceptions.UnknownValue(Student.id, studentId)
        return students

    def _seat(self, students: List[Student], busId: UUID) -> Bus:
        bus = (
            self.session.query(Bus)
            .filter(Bus.id == busId)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if bus is None:
            raise exceptions.UnknownValue(Student.assigned_bus_id, busId)
        moving = [student.id for student in students]
        riders = (
            self.session.query(Student.id)
            .filter(
                Student.assigned_bus_id == bus.id,
                Student.is_active.is_(True),
                Student.id.not_in(moving),
            )
            .count()
        )
        if riders + len(moving) > bus.capacity:
            raise exceptions.CapacityExceeded(bus.capacity)
        for student in students:
            student.assigned_bus_id = bus.id
        return bus

    def toRoute(
        self, studentIds: Iterable[UUID], routeId: UUID, busId: Optional[UUID] = None
    ) -> List[Student]:
        """
        Put students on a route, and on a bus of that route when `busId` is given.

        Raises:
            exceptions.UnknownValue: If a student, the route or the bus does not exist.
            exceptions.CapacityExceeded: If the bus cannot seat the students.
        """
        try:
            students = self._students(studentIds)
            if self.session.query(Route.id).filter(Route.id == routeId).first() is None:
                raise exceptions.UnknownValue(Student.assigned_route_id, routeId)
            if busId is not None:
                self._seat(students, busId)
            for student in students:
                student.assigned_route_id = routeId
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("Assigned %d students to route %s", len(students), routeId)
        return students

    def toBus(self, studentIds: Iterable[UUID], busId: UUID) -> List[Student]:
        """
        Put students on a bus, within its capacity.

        Raises:
            exceptions.UnknownValue: If a student or the bus does not exist.
            exceptions.CapacityExceeded: If the bus cannot seat the students.
        """
        try:
            students = self._students(studentIds)
            self._seat(students, busId)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("Assigned %d students to bus %s", len(students), busId)
        return students
