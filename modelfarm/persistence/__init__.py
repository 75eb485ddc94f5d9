from .database import Database
from .documents import DocumentRepository
from .jobs import JobRepository
from .tasks import TaskRepository
from .repositories import Repositories
