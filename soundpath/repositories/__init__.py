from soundpath.repositories.listen_logs import InMemoryListenLogsRepository, PostgresListenLogsRepository
from soundpath.repositories.tracks import InMemoryTracksRepository, PostgresTracksRepository
from soundpath.repositories.votes import InMemoryVotesRepository, PostgresVotesRepository

__all__ = [
    "InMemoryListenLogsRepository",
    "PostgresListenLogsRepository",
    "InMemoryTracksRepository",
    "PostgresTracksRepository",
    "InMemoryVotesRepository",
    "PostgresVotesRepository",
]
