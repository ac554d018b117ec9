import asyncio

from events_mq import Publisher


async def main() -> None:
    async with Publisher(service_name='voting-service') as publisher:
        payload = {
            'meeting_id': 'm1',
            'pollType': 'single',
            'options': ['A', 'B'],
        }
        envelope = await publisher.publish('voting.create', payload)
        print(f'published {envelope.event_type} as {envelope.event_id}')


if __name__ == '__main__':
    asyncio.run(main())
